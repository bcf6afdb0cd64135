from fastapi import APIRouter, Depends, Query
from typing import List

from .. import friendship
from .. import crud
from ..schemas.friendships import FriendRequestIn, RespondIn, FriendRequestOut, PendingRequestOut, StatusOut, SuggestionOut
from ..schemas.profiles import ProfileOut, ActionOkOut
from ..auth import get_current_user
from ..cache import check_rate_limit
from ..exceptions import RateLimited

router = APIRouter()


@router.post('/requests', response_model=FriendRequestOut)
async def send_request(payload: FriendRequestIn, current_user: int = Depends(get_current_user)):
    # Rate limiting - max 20 friend requests per hour
    if not await check_rate_limit(current_user, "friend_request", limit=20, window=3600):
        raise RateLimited("Rate limit exceeded. Too many friend requests.")
    return await friendship.send_request(current_user, payload.target_id)


@router.post('/requests/{request_id}/respond', response_model=FriendRequestOut)
async def respond(request_id: int, payload: RespondIn, current_user: int = Depends(get_current_user)):
    return await friendship.respond(current_user, request_id, payload.decision)


@router.delete('/requests/{request_id}', response_model=ActionOkOut)
async def cancel_request(request_id: int, current_user: int = Depends(get_current_user)):
    await friendship.cancel_request(current_user, request_id)
    return ActionOkOut(message="Friend request cancelled.")


@router.get('/requests/pending', response_model=List[PendingRequestOut])
async def pending_requests(current_user: int = Depends(get_current_user)):
    return await friendship.pending_for_me(current_user)


@router.get('/status/{other_id}', response_model=StatusOut)
async def friend_status(other_id: int, current_user: int = Depends(get_current_user)):
    return {'status': await friendship.status(current_user, other_id)}


@router.get('/suggestions', response_model=List[SuggestionOut])
async def suggestions(
    sort: str = Query('common_interests', pattern='^(common_interests|alphabetical|field_of_study)$'),
    limit: int = Query(10, ge=1, le=50),
    current_user: int = Depends(get_current_user),
):
    return await friendship.suggestions(current_user, sort=sort, limit=limit)


@router.get('', response_model=List[ProfileOut])
async def my_friends(current_user: int = Depends(get_current_user)):
    peer_ids = await friendship.peers(current_user)
    profiles = await crud.get_profiles(peer_ids)
    return [profiles[p] for p in peer_ids if p in profiles]


@router.delete('/{other_id}', response_model=ActionOkOut)
async def unfriend(other_id: int, current_user: int = Depends(get_current_user)):
    await friendship.unfriend(current_user, other_id)
    return ActionOkOut(message="Friend removed.")
