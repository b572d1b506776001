import asyncio
import logging
from typing import Set

from fastapi import WebSocket

from .schemas import AnalysisResult

logger = logging.getLogger(__name__)

NEW_ANALYSIS_EVENT = "analysis:new"


class Broadcaster:
    """Live WebSocket subscribers and fire-and-forget fan-out to them.

    No acknowledgement, backlog or replay is kept: a subscriber that is not
    connected when a result is published never receives it over this
    channel.
    """

    def __init__(self) -> None:
        self._subscribers: Set[WebSocket] = set()
        self._pending: Set[asyncio.Task] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        self._subscribers.add(ws)
        logger.info("Client connected: %s", _peer(ws))

    def disconnect(self, ws: WebSocket) -> None:
        if ws in self._subscribers:
            self._subscribers.discard(ws)
            logger.info("Client disconnected: %s", _peer(ws))

    def publish(self, result: AnalysisResult) -> int:
        """Schedule delivery of ``result`` to every current subscriber.

        Returns the number of subscribers the event was scheduled for.
        """
        message = {"event": NEW_ANALYSIS_EVENT, "data": result.to_json()}
        targets = list(self._subscribers)
        logger.info(
            "Emitting new analysis to %d client(s): %s - %s",
            len(targets),
            result.company_name,
            result.vacancy_title,
        )
        for ws in targets:
            task = asyncio.create_task(self._send(ws, message))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        return len(targets)

    async def _send(self, ws: WebSocket, message: dict) -> None:
        try:
            await ws.send_json(message)
        except Exception as exc:
            logger.warning("Dropping subscriber %s after failed send: %s", _peer(ws), exc)
            self.disconnect(ws)

    async def close(self) -> None:
        for task in list(self._pending):
            task.cancel()
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        self._subscribers.clear()


def _peer(ws: WebSocket) -> str:
    client = ws.client
    if client is None:
        return "unknown"
    return f"{client.host}:{client.port}"
