"""
Amora — main.py
─────────────────────────────────────────────────────────────────
Central entry point. All routers mount here.

Start server:
    uvicorn amora.main:app --reload --port 8000

File map:
    auth.py      → /api/auth/*      (phone OTP login)
    users.py     → /api/users/*     (profile, profile views)
    matching.py  → /api/matches/*   (candidates, like, dislike)
    chat.py      → /api/chat/*      (conversations, messages, read)
    admin.py     → /api/admin/*     (coins, premium)
    realtime.py  → /ws              (WebSocket gateway)
    quota.py     → service only
    wallet.py    → service only
    alerts.py    → service only
─────────────────────────────────────────────────────────────────
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from amora.alerts import AdminAlerts
from amora.chat import ConversationStore
from amora.core.config import cfg
from amora.core.database import init_all_tables
from amora.core.errors import install_error_handlers
from amora.matching import MatchEngine
from amora.otp import OtpVerifier
from amora.quota import QuotaLedger
from amora.realtime import RealtimeGateway, RealtimeHub
from amora.storage.s3 import check_s3_connection
from amora.users import UserDirectory
from amora.wallet import CoinWallet

# ── Logging ───────────────────────────────────
logging.basicConfig(
    level   = logging.INFO,
    format  = "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    datefmt = "%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("amora.main")

VERSION = "1.0.0"


# ─────────────────────────────────────────────
# Wiring
# ─────────────────────────────────────────────
def build_services(app: FastAPI, db_path: Optional[str] = None, hub: Optional[RealtimeHub] = None):
    """Attach every service to app.state. One hub shared by all of them."""
    hub    = hub or RealtimeHub()
    wallet = CoinWallet(db_path)
    users  = UserDirectory(hub, db_path)
    quota  = QuotaLedger(hub, wallet, db_path)
    alerts = AdminAlerts()
    chat   = ConversationStore(hub, users, quota, alerts, db_path)

    app.state.hub     = hub
    app.state.wallet  = wallet
    app.state.users   = users
    app.state.matches = MatchEngine(hub, db_path)
    app.state.quota   = quota
    app.state.alerts  = alerts
    app.state.chat    = chat
    app.state.otp     = OtpVerifier()
    app.state.gateway = RealtimeGateway(hub, users, chat)


# ─────────────────────────────────────────────
# Startup / Shutdown
# ─────────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    db_path = app.state.db_path
    logger.info(f"Amora starting [{cfg.ENV}] {cfg!r}")

    await init_all_tables(db_path)
    logger.info("All tables initialized")

    if cfg.s3_ready:
        s3_status = await asyncio.to_thread(check_s3_connection)
        if s3_status["ok"]:
            logger.info(f"S3 ready: {s3_status['bucket']} ({s3_status['region']})")
        else:
            logger.warning(f"S3 not reachable: {s3_status['error']}")
    else:
        logger.warning("AWS credentials not set, profile image upload disabled")

    build_services(app, db_path)
    logger.info("Services ready. Amora is live.")

    yield

    await app.state.hub.close()
    await app.state.alerts.drain()
    logger.info("Amora shut down.")


# ─────────────────────────────────────────────
# App
# ─────────────────────────────────────────────
def create_app(db_path: Optional[str] = None) -> FastAPI:
    app = FastAPI(
        title       = "Amora API",
        description = "Matching and messaging backend for Amora",
        version     = VERSION,
        docs_url    = None if cfg.is_production else "/docs",
        redoc_url   = None if cfg.is_production else "/redoc",
        lifespan    = lifespan,
    )
    app.state.db_path = db_path or cfg.DB_PATH

    app.add_middleware(
        CORSMiddleware,
        allow_origins     = [cfg.FRONTEND_URL],
        allow_credentials = True,
        allow_methods     = ["*"],
        allow_headers     = ["*"],
    )
    install_error_handlers(app)

    from amora.admin    import router as admin_router
    from amora.auth     import router as auth_router
    from amora.chat     import router as chat_router
    from amora.matching import router as matches_router
    from amora.realtime import router as realtime_router
    from amora.users    import router as users_router

    app.include_router(auth_router)
    app.include_router(users_router)
    app.include_router(matches_router)
    app.include_router(chat_router)
    app.include_router(admin_router)
    app.include_router(realtime_router)

    @app.get("/health", tags=["system"])
    async def health():
        """Quick ping for load balancers / uptime monitors."""
        return {
            "status":  "ok",
            "app":     "Amora",
            "version": VERSION,
            "env":     cfg.ENV,
        }

    return app


app = create_app()


# ─────────────────────────────────────────────
# Run
# ─────────────────────────────────────────────
if __name__ == "__main__":
    import uvicorn
    # single worker: the realtime hub lives in process memory
    uvicorn.run(
        "amora.main:app",
        host   = "0.0.0.0",
        port   = 8000,
        reload = not cfg.is_production,
    )
