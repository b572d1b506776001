"""Kiosk-side consumer of the result feed.

Listens on the WebSocket push channel and, while that channel is down,
polls ``/result/latest`` as a safety net.  Both channels feed a single
``DisplaySequencer``; the renderer is called with each result to show, or
``None`` for the idle screen.
"""

import asyncio
import json
import logging
import os
from typing import Any, Callable, Optional

import httpx
import websockets
from pydantic import ValidationError
from websockets.exceptions import ConnectionClosed, WebSocketException

from .broadcast import NEW_ANALYSIS_EVENT
from .config import float_env
from .schemas import AnalysisResult
from .sequencer import DisplaySequencer, Offer

logger = logging.getLogger(__name__)

DEFAULT_SERVER_URL = "http://localhost:3000"
PULL_TIMEOUT = 5.0  # seconds

Renderer = Callable[[Optional[AnalysisResult]], None]


def _log_renderer(result: Optional[AnalysisResult]) -> None:
    if result is None:
        logger.info("Showing idle screen")
    else:
        logger.info(
            "Showing result %s: %s - %s (score=%s)",
            result.id,
            result.company_name,
            result.vacancy_title,
            result.score,
        )


class KioskClient:
    def __init__(
        self,
        server_url: str = DEFAULT_SERVER_URL,
        renderer: Optional[Renderer] = None,
        *,
        display_seconds: float = 15,
        poll_interval: float = 10,
        pull_timeout: float = PULL_TIMEOUT,
        sequencer: Optional[DisplaySequencer] = None,
        http: Optional[httpx.AsyncClient] = None,
    ):
        self.server_url = server_url.rstrip("/")
        self.renderer = renderer or _log_renderer
        self.display_seconds = display_seconds
        self.poll_interval = poll_interval
        self.pull_timeout = pull_timeout
        self.sequencer = sequencer or DisplaySequencer()
        self.push_connected = False
        self._http = http or httpx.AsyncClient(timeout=pull_timeout)
        self._timer: Optional[asyncio.Task] = None

    @property
    def ws_url(self) -> str:
        if self.server_url.startswith("https://"):
            return "wss://" + self.server_url[len("https://"):] + "/ws"
        if self.server_url.startswith("http://"):
            return "ws://" + self.server_url[len("http://"):] + "/ws"
        return self.server_url + "/ws"

    # -----------------------------------------------------------------------
    # Delivery
    # -----------------------------------------------------------------------

    def deliver(self, payload: Any, channel: str) -> Optional[Offer]:
        """Hand a result from ``channel`` to the sequencer."""
        try:
            outcome = self.sequencer.offer(payload)
        except ValidationError as exc:
            logger.warning("Discarding unreadable result from %s: %s", channel, exc)
            return None

        if outcome is Offer.SHOWN:
            self._show(self.sequencer.current)
        elif outcome is Offer.QUEUED:
            logger.info(
                "Result queued via %s (%d waiting)", channel, len(self.sequencer.pending)
            )
        return outcome

    def skip(self) -> Optional[AnalysisResult]:
        """Operator action: end the current display now."""
        return self._advance()

    def _show(self, result: Optional[AnalysisResult]) -> None:
        self.renderer(result)
        self._cancel_timer()
        if result is not None:
            self._timer = asyncio.get_running_loop().create_task(
                self._expire(self.display_seconds)
            )

    def _advance(self) -> Optional[AnalysisResult]:
        nxt = self.sequencer.complete()
        self._show(nxt)
        return nxt

    async def _expire(self, seconds: float) -> None:
        await asyncio.sleep(seconds)
        self._timer = None
        self._advance()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    # -----------------------------------------------------------------------
    # Pull channel
    # -----------------------------------------------------------------------

    async def poll_once(self) -> Optional[Offer]:
        """Fetch the latest result once; any failure means "no update"."""
        try:
            response = await self._http.get(
                f"{self.server_url}/result/latest", timeout=self.pull_timeout
            )
        except httpx.HTTPError as exc:
            logger.warning("Polling error: %s", exc)
            return None

        if response.status_code == 404:
            return None
        if response.is_error:
            logger.warning("Polling returned HTTP %d", response.status_code)
            return None
        try:
            payload = response.json()
        except ValueError:
            logger.warning("Polling returned a non-JSON body")
            return None
        return self.deliver(payload, "pull")

    async def _pull_loop(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            if not self.push_connected:
                await self.poll_once()

    # -----------------------------------------------------------------------
    # Push channel
    # -----------------------------------------------------------------------

    def handle_push_message(self, message: Any) -> Optional[Offer]:
        try:
            event = json.loads(message)
        except (TypeError, ValueError):
            logger.warning("Ignoring malformed push message")
            return None
        if not isinstance(event, dict) or event.get("event") != NEW_ANALYSIS_EVENT:
            return None
        return self.deliver(event.get("data"), "push")

    async def _push_loop(self) -> None:
        while True:
            try:
                await self._push_session()
            except (WebSocketException, OSError) as exc:
                # connect() stops retrying on errors it deems permanent, such
                # as a rejected handshake.
                self.push_connected = False
                logger.warning("Push channel unavailable, retrying: %s", exc)
                await asyncio.sleep(self.poll_interval)

    async def _push_session(self) -> None:
        async for ws in websockets.connect(self.ws_url):
            self.push_connected = True
            logger.info("Connected to server")
            try:
                async for message in ws:
                    self.handle_push_message(message)
            except ConnectionClosed:
                logger.warning("Disconnected from server, reconnecting")
            finally:
                self.push_connected = False

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    async def load_remote_config(self) -> None:
        """Adopt the server's display and polling intervals when available."""
        try:
            response = await self._http.get(
                f"{self.server_url}/api/config", timeout=self.pull_timeout
            )
            response.raise_for_status()
            config = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Failed to fetch config, keeping local values: %s", exc)
            return
        if not isinstance(config, dict):
            return

        if isinstance(config.get("displaySeconds"), int) and config["displaySeconds"] > 0:
            self.display_seconds = config["displaySeconds"]
        if (
            isinstance(config.get("pollIntervalSeconds"), int)
            and config["pollIntervalSeconds"] > 0
        ):
            self.poll_interval = config["pollIntervalSeconds"]

    async def run(self) -> None:
        await self.load_remote_config()
        self.renderer(None)
        try:
            await asyncio.gather(self._push_loop(), self._pull_loop())
        finally:
            self._cancel_timer()
            await self._http.aclose()


def main() -> None:
    from dotenv import load_dotenv

    load_dotenv()
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    client = KioskClient(
        os.getenv("SERVER_URL", DEFAULT_SERVER_URL),
        display_seconds=float_env("DISPLAY_SECONDS", 15),
        poll_interval=float_env("POLL_INTERVAL_SECONDS", 10),
    )
    try:
        asyncio.run(client.run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
