import json
import logging
from typing import List

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, Query

from ..auth import user_id_from_token
from ..cache import cache
from ..conversations import ConversationFeed
from ..core import LIVE_SESSIONS
from ..exceptions import AppError
from ..friendship import PendingRequestsFeed
from ..schemas.friendships import PendingRequestOut
from ..schemas.messages import ConversationSummary, TranscriptMessageOut
from ..storage import get_storage

logger = logging.getLogger(__name__)

router = APIRouter()

PRESENCE_TTL = 60


class LiveSession:
    """
    Everything one connected client sees live: its pending friend requests,
    its conversation list and at most one open conversation.
    """

    def __init__(self, user_id: int, websocket: WebSocket):
        self.user_id = user_id
        self.websocket = websocket
        self.requests = PendingRequestsFeed(user_id, on_change=self.push_requests)
        self.conversations = ConversationFeed(
            user_id,
            on_change=self.push_conversations,
            on_message=self.push_message,
            storage=get_storage(),
        )

    async def send(self, frame_type: str, data=None, **extra):
        payload = {'type': frame_type, **extra}
        if data is not None:
            payload['data'] = data
        await self.websocket.send_json(payload)

    async def push_requests(self, items: List[PendingRequestOut]):
        await self.send('friend_requests', [r.model_dump(mode='json') for r in items])

    async def push_conversations(self, items: List[ConversationSummary]):
        await self.send('conversations', [c.model_dump(mode='json') for c in items])

    async def push_message(self, msg: TranscriptMessageOut):
        await self.send('message', msg.model_dump(mode='json'), peer_id=self.conversations.open_peer_id)

    async def start(self):
        await self.requests.start()
        await self.conversations.start()

    async def handle(self, data: dict):
        action = data.get('action')
        if action == 'open':
            channel = await self.conversations.open(int(data['peer_id']))
            await self.send('transcript', [m.model_dump(mode='json') for m in channel.messages], peer_id=channel.peer_id)
        elif action == 'send':
            if not self.conversations.channel:
                await self.send('error', detail='No conversation is open')
                return
            await self.conversations.channel.send(data.get('body'))
        elif action == 'close':
            await self.conversations.close_conversation()
        else:
            await self.send('error', detail=f'Unknown action {action!r}')

    async def close(self):
        await self.conversations.close()
        await self.requests.close()


@router.websocket('/live')
async def live_ws(websocket: WebSocket, token: str = Query(None)):
    user_id = user_id_from_token(token)
    if user_id is None:
        await websocket.close(code=1008)
        return
    await websocket.accept()
    await cache.set(str(user_id), 'online', PRESENCE_TTL, 'presence')
    LIVE_SESSIONS.inc()
    session = LiveSession(user_id, websocket)
    try:
        try:
            await session.start()
        except AppError as e:
            logger.warning(f'live session for {user_id} could not start: {e.detail}')
            await session.send('error', detail=e.detail)
            await websocket.close(code=1011)
            return
        while True:
            try:
                data = await websocket.receive_json()
            except json.JSONDecodeError:
                await session.send('error', detail='Frames must be JSON objects')
                continue
            try:
                await session.handle(data if isinstance(data, dict) else {})
            except AppError as e:
                await session.send('error', detail=e.detail)
            except (KeyError, TypeError, ValueError):
                await session.send('error', detail='Malformed action')
    except WebSocketDisconnect:
        logger.info(f'live session for {user_id} disconnected')
    finally:
        await session.close()
        LIVE_SESSIONS.dec()
        await cache.delete(str(user_id), 'presence')
