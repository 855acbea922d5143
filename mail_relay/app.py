"""RelayApp: wires the monitor, renderer and publisher and runs until shutdown."""

from __future__ import annotations

import asyncio
import time

import structlog
import uvicorn

from .config import RelayConfig
from .console import OperatorConsole
from .discord_client import DiscordClient
from .health import create_health_app
from .models import RelayStatus, StructuredMessage
from .monitor import EmailMonitor
from .publisher import DiscordPublisher
from .renderer import EmailRenderer
from .shutdown import install_signal_handlers, remove_signal_handlers

logger = structlog.get_logger()


class RelayApp:
    """Forward emails from an IMAP mailbox to a Discord channel.

    ``run()`` logs in to Discord, starts the monitor and then runs
    the operator console and the health server until SIGINT/SIGTERM.
    On shutdown the monitor is stopped, the console closed, in-flight
    publishes are awaited and the Discord client is disconnected.
    """

    def __init__(
        self,
        config: RelayConfig,
        *,
        discord: DiscordClient | None = None,
        renderer: EmailRenderer | None = None,
        monitor: EmailMonitor | None = None,
    ) -> None:
        self.config = config
        self.status: RelayStatus = RelayStatus.STARTING
        self.start_time: float = time.monotonic()

        self._discord = discord or DiscordClient(config.discord)
        self.publisher = DiscordPublisher(
            self._discord,
            config.discord.channel_id,
            keyword=config.keyword,
            link_text=config.link_text,
            color=config.discord.embed_color,
        )
        if renderer is None and config.renderer.enabled:
            renderer = EmailRenderer(config.renderer)
        self._renderer = renderer

        self.monitor = monitor or EmailMonitor(
            config.imap,
            on_new_email=self.handle_email,
            on_latest_email=self.handle_email,
            on_error=self._on_monitor_error,
        )
        self._console = OperatorConsole(self.monitor)
        self._shutdown_event = asyncio.Event()

    # ------------------------------------------------------------------
    # Message handling
    # ------------------------------------------------------------------

    async def handle_email(self, message: StructuredMessage) -> None:
        """Render (optional) and publish one email."""
        snapshot: bytes | None = None
        if self._renderer is not None and self.publisher.accepts(message):
            try:
                snapshot = await self._renderer.render(message)
            except Exception as exc:
                logger.warning(
                    "email_render_failed",
                    message_id=message.message_id,
                    error=str(exc),
                )

        await self.publisher.publish(message, snapshot)

    async def _on_monitor_error(self, exc: Exception) -> None:
        logger.error("email_monitor_error", error=str(exc), error_type=type(exc).__name__)

    # ------------------------------------------------------------------
    # Background tasks
    # ------------------------------------------------------------------

    async def _run_console(self) -> None:
        try:
            await self._console.run()
        except (OSError, ValueError) as exc:
            # stdin is a regular file or closed (e.g. running detached)
            logger.info("console_unavailable", error=str(exc))

    async def _run_health_server(self) -> None:
        """Start the FastAPI health server and shut it down on signal."""
        app = create_health_app(self)
        config = uvicorn.Config(
            app,
            host="0.0.0.0",
            port=self.config.health_port,
            log_level="warning",
        )
        server = uvicorn.Server(config)

        serve_task = asyncio.create_task(server.serve())
        await self._shutdown_event.wait()
        server.should_exit = True
        await serve_task

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Start all subsystems and run until shutdown.

        Raises :class:`httpx.HTTPError` if the Discord login fails.
        """
        self.start_time = time.monotonic()
        logger.info("relay_starting", channel_id=self.config.discord.channel_id)

        await self._discord.start()
        try:
            bot = await self._discord.login()
        except Exception:
            logger.exception("discord_login_failed")
            await self._discord.stop()
            self.status = RelayStatus.STOPPED
            raise

        install_signal_handlers(self._begin_shutdown)
        self.monitor.start()
        self.status = RelayStatus.RUNNING
        logger.info(
            "email_monitoring_started",
            bot=bot,
            keyword=self.config.keyword,
            mailbox=self.config.imap.mailbox,
        )

        try:
            async with asyncio.TaskGroup() as tg:
                if self.config.console_enabled:
                    tg.create_task(self._run_console())
                if self.config.health_enabled:
                    tg.create_task(self._run_health_server())
                await self._shutdown_event.wait()
                self._begin_shutdown()
        except* Exception:
            logger.exception("relay_task_group_error")
        finally:
            self._begin_shutdown()
            await self.monitor.drain()
            if self._renderer is not None:
                await self._renderer.close()
            await self._discord.stop()
            remove_signal_handlers()
            self.status = RelayStatus.STOPPED
            logger.info("relay_stopped")

    def _begin_shutdown(self) -> None:
        if self.status is RelayStatus.STOPPING:
            return
        logger.info("relay_shutting_down")
        self.status = RelayStatus.STOPPING
        self.monitor.stop()
        self._console.close()
        self._shutdown_event.set()
