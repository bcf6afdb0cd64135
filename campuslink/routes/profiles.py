"""
Profile Management Routes
Reference data shown next to requests, conversations and transcripts.
"""
from fastapi import APIRouter, Depends, File, UploadFile
from pydantic import EmailStr

from ..schemas.profiles import ProfileOut, ProfileUpdateIn, InterestsIn, InterestsOut
from .. import crud
from ..auth import get_current_user
from ..cache import cache_profile, get_cached_profile, invalidate_profile, check_rate_limit
from ..exceptions import NotFound, RateLimited
from ..storage import ObjectStorage, avatar_key, get_storage, prepare_avatar

router = APIRouter()


async def _load_profile(user_id: int) -> ProfileOut:
    cached = await get_cached_profile(user_id)
    if cached:
        return ProfileOut.model_validate(cached)

    profile = await crud.get_profile(user_id)
    if not profile:
        raise NotFound(f'User {user_id} not found.')
    out = ProfileOut.model_validate(profile)
    await cache_profile(user_id, out.model_dump(mode='json'), ttl=300)
    return out


@router.get('/me', response_model=ProfileOut)
async def my_profile(current_user: int = Depends(get_current_user)):
    return await _load_profile(current_user)


@router.get('/lookup', response_model=ProfileOut)
async def lookup_by_email(email: EmailStr, current_user: int = Depends(get_current_user)):
    profile = await crud.get_profile_by_email(email)
    if not profile:
        raise NotFound(f'No user with email {email}.')
    return profile


@router.patch('/me', response_model=ProfileOut)
async def update_my_profile(payload: ProfileUpdateIn, current_user: int = Depends(get_current_user)):
    profile = await crud.update_profile(current_user, **payload.model_dump(exclude_unset=True))
    if not profile:
        raise NotFound(f'User {current_user} not found.')
    await invalidate_profile(current_user)
    return profile


@router.put('/me/avatar', response_model=ProfileOut)
async def upload_avatar(
    file: UploadFile = File(...),
    current_user: int = Depends(get_current_user),
    storage: ObjectStorage = Depends(get_storage),
):
    """Validate, resize and store a new profile picture"""
    # max 5 uploads per hour
    if not await check_rate_limit(current_user, "avatar_upload", limit=5, window=3600):
        raise RateLimited("Rate limit exceeded. Too many uploads.")

    content = prepare_avatar(file.filename, await file.read())
    url = await storage.upload_object(avatar_key(current_user), content, 'image/jpeg')
    profile = await crud.update_profile(current_user, avatar_url=url)
    if not profile:
        raise NotFound(f'User {current_user} not found.')
    await invalidate_profile(current_user)
    return profile


@router.put('/me/interests', response_model=InterestsOut)
async def set_my_interests(payload: InterestsIn, current_user: int = Depends(get_current_user)):
    categories = await crud.set_interests(current_user, payload.categories)
    return {'categories': categories}


@router.get('/{user_id}', response_model=ProfileOut)
async def get_profile(user_id: int, current_user: int = Depends(get_current_user)):
    return await _load_profile(user_id)
