"""
Status Dashboard Cog - JSON debug endpoints
Runs on localhost only - no authentication required
"""
import logging
from collections import deque
from datetime import datetime, UTC

import psutil
from aiohttp import web
from discord.ext import commands

from muse.config import config

logger = logging.getLogger(__name__)


class RecentLogHandler(logging.Handler):
    """Keeps the last few hundred log records for /api/logs."""

    def __init__(self, maxlen: int = 500):
        super().__init__()
        self.records: deque = deque(maxlen=maxlen)

    def emit(self, record):
        try:
            self.records.append({
                "timestamp": record.created,
                "level": record.levelname,
                "message": record.getMessage(),
                "logger": record.name,
            })
        except Exception:
            self.handleError(record)


class DashboardCog(commands.Cog):
    """Local HTTP endpoints exposing engine stats."""

    def __init__(self, bot: commands.Bot, host: str = "127.0.0.1", port: int = 8080):
        self.bot = bot
        self.host = host
        self.port = port
        self.app: web.Application | None = None
        self.runner: web.AppRunner | None = None
        self._log_handler: RecentLogHandler | None = None

    async def cog_load(self):
        self.app = web.Application()
        self._setup_routes()

        self._log_handler = RecentLogHandler()
        self._log_handler.setLevel(logging.INFO)
        logging.getLogger().addHandler(self._log_handler)

        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, self.host, self.port)
        await site.start()

        logger.info(f"Dashboard at http://{self.host}:{self.port}")

    async def cog_unload(self):
        if self._log_handler:
            logging.getLogger().removeHandler(self._log_handler)
        if self.runner:
            await self.runner.cleanup()

    def _setup_routes(self):
        self.app.router.add_get("/api/status", self._handle_status)
        self.app.router.add_get("/api/sessions", self._handle_sessions)
        self.app.router.add_get("/api/cache", self._handle_cache)
        self.app.router.add_get("/api/logs", self._handle_logs)

    def _get_status_data(self) -> dict:
        process = psutil.Process()
        return {
            "status": "online",
            "guilds": len(self.bot.guilds),
            "voice_connections": len(self.bot.voice_clients),
            "latency_ms": round(self.bot.latency * 1000, 2),
            "cpu_percent": psutil.cpu_percent(),
            "ram_percent": psutil.virtual_memory().percent,
            "process_ram_mb": round(process.memory_info().rss / 1024 / 1024, 2),
            "uptime_seconds": int((datetime.now(UTC) - self.bot.start_time).total_seconds()),
            "cache": self.bot.cache.stats(),
            "playback": self.bot.playback.stats(),
            "prefetch": self.bot.prefetcher.stats(),
            "rate_limiter": self.bot.rate_limiter.stats(),
            "resolver": self.bot.resolver.stats(),
        }

    async def _handle_status(self, request: web.Request) -> web.Response:
        return web.json_response(self._get_status_data())

    async def _handle_sessions(self, request: web.Request) -> web.Response:
        sessions = []
        for session in self.bot.sessions:
            info = self.bot.playback.now_playing_info(session)
            info["guild_id"] = str(session.guild_id)
            info["consecutive_failures"] = session.consecutive_failures
            info["upcoming"] = [t.title for t in session.upcoming(10)]
            sessions.append(info)
        return web.json_response(sessions)

    async def _handle_cache(self, request: web.Request) -> web.Response:
        entries = [
            {
                "key": e.key,
                "filename": e.to_json()["filename"],
                "title": e.title,
                "duration": e.duration,
                "created_at": e.created_at,
            }
            for e in self.bot.cache.entries()
        ]
        return web.json_response({"stats": self.bot.cache.stats(), "entries": entries})

    async def _handle_logs(self, request: web.Request) -> web.Response:
        records = list(self._log_handler.records) if self._log_handler else []
        return web.json_response(records[-200:])


async def setup(bot: commands.Bot):
    if not config.DASHBOARD_ENABLED:
        logger.info("Dashboard disabled")
        return
    await bot.add_cog(DashboardCog(bot, config.DASHBOARD_HOST, config.DASHBOARD_PORT))
