import os
import re
import logging
from pathlib import Path

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field
from dotenv import load_dotenv

from memory_match.config import Settings, load_settings
from memory_match.leaderboard import load_leaderboard
from memory_match.log_fetcher import build_log_fetcher
from memory_match.score_recorder import build_score_recorder
from memory_match.sessions import InMemorySessions

load_dotenv(dotenv_path=Path('.env.local'))

API_BASE = "/api/memory"

ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


class FlipBody(BaseModel):
    card_id: str = Field(..., min_length=1, max_length=64)


def create_app(sessions=None, settings: Settings = None, log_fetcher=None, recorder_factory=None) -> FastAPI:
    app = FastAPI(title="Memory Match Service", version="0.1.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"]
    )

    settings = settings or load_settings()
    app.state.settings = settings
    if sessions is None:
        factory = recorder_factory or (lambda user_id: build_score_recorder(settings, user_id))
        sessions = InMemorySessions(recorder_factory=factory)
    app.state.sessions = sessions
    app.state.log_fetcher = log_fetcher

    @app.on_event("startup")
    async def _log_settings():
        s = app.state.settings
        logging.getLogger("uvicorn.error").info(
            f"[memory-match] contract={s.contract_address if s.contract_configured else '-'} "
            f"deploy_block={s.deploy_block} leaderboard_source={s.leaderboard_source} "
            f"provider={s.provider_label} chunked={int(s.use_chunking)} signer={'set' if s.signer_rpc_url else '-'}"
        )

    def get_user_id(req: Request) -> str:
        is_cloud_run = bool(os.getenv("K_SERVICE") or os.getenv("K_REVISION") or os.getenv("K_CONFIGURATION"))
        trust_x_user_id = _flag("TRUST_X_USER_ID", "0" if is_cloud_run else "1")
        allow_anon = _flag("ALLOW_ANON", "0" if is_cloud_run else "1")
        default_uid = os.getenv("DEFAULT_USER_ID", "local-user")
        logger = logging.getLogger("uvicorn.error")

        # 1) Wallet address of the connected player
        wallet = req.headers.get("X-Wallet-Address")
        if wallet:
            if not ADDRESS_RE.match(wallet):
                raise HTTPException(status_code=400, detail="invalid wallet address")
            logger.info(f"[memory-match] get_user_id via=wallet user_id={wallet}")
            return wallet

        # 2) Only trust explicit header in dev or if explicitly enabled
        uid = req.headers.get("X-User-Id")
        if uid and trust_x_user_id:
            logger.info(f"[memory-match] get_user_id via=x-user-id user_id={uid}")
            return uid

        # 3) Dev fallback (only if explicitly allowed)
        if allow_anon:
            logger.info(f"[memory-match] get_user_id via=anon-fallback user_id={default_uid}")
            return default_uid

        logger.warning(
            f"[memory-match] get_user_id missing user id is_cloud_run={int(is_cloud_run)} "
            f"trust_x_user_id={int(trust_x_user_id)} allow_anon={int(allow_anon)}"
        )
        raise HTTPException(status_code=401, detail="missing user id")

    def require_game(user_id: str):
        game = app.state.sessions.get_game(user_id)
        if not game:
            raise HTTPException(status_code=404, detail="no game")
        return game

    @app.post(f"{API_BASE}/start")
    async def start_game(background_tasks: BackgroundTasks, user_id: str = Depends(get_user_id)):
        try:
            game = await app.state.sessions.start_game(user_id)
        except ValueError as e:
            if str(e) == "active_game_exists":
                raise HTTPException(status_code=409, detail="active game exists")
            raise HTTPException(status_code=400, detail=str(e))
        # warm the pool for the next stage while this one is played
        background_tasks.add_task(app.state.sessions.prefetch_next, user_id)
        return app.state.sessions.to_client(game) | {"game_id": user_id}

    @app.get(f"{API_BASE}/state")
    def get_state(user_id: str = Depends(get_user_id)):
        game = require_game(user_id)
        return app.state.sessions.to_client(game) | {"game_id": user_id}

    @app.post(f"{API_BASE}/flip")
    def flip(body: FlipBody, user_id: str = Depends(get_user_id)):
        require_game(user_id)
        game, _move = app.state.sessions.flip(user_id, body.card_id)
        return app.state.sessions.to_client(game) | {"game_id": user_id}

    @app.post(f"{API_BASE}/resolve")
    def resolve(user_id: str = Depends(get_user_id)):
        require_game(user_id)
        game, move = app.state.sessions.resolve(user_id)
        resp = app.state.sessions.to_client(game) | {"game_id": user_id}
        resp["last_move"] = {
            "matched": bool(move["matched"]),
            "damage": int(move["damage"]),
            "healed": int(move["healed"]),
        }
        return resp

    @app.post(f"{API_BASE}/advance")
    async def advance(background_tasks: BackgroundTasks, user_id: str = Depends(get_user_id)):
        require_game(user_id)
        try:
            game = await app.state.sessions.advance(user_id)
        except ValueError as e:
            raise HTTPException(status_code=409, detail=str(e))
        background_tasks.add_task(app.state.sessions.prefetch_next, user_id)
        return app.state.sessions.to_client(game) | {"game_id": user_id}

    @app.post(f"{API_BASE}/record")
    async def record(user_id: str = Depends(get_user_id)):
        require_game(user_id)
        try:
            session = await app.state.sessions.record(user_id)
        except ValueError as e:
            raise HTTPException(status_code=409, detail=str(e))
        logging.getLogger("uvicorn.error").info(
            f"[memory-match] record user_id={user_id} status={session.status} error={session.last_error or '-'}"
        )
        return session.to_client()

    @app.get(f"{API_BASE}/leaderboard")
    async def leaderboard():
        s = app.state.settings
        fetcher = app.state.log_fetcher
        if fetcher is None and s.contract_configured:
            fetcher = app.state.log_fetcher = build_log_fetcher(s)
        body = await load_leaderboard(s, fetcher)
        if "error" in body:
            logging.getLogger("uvicorn.error").warning(f"[memory-match] leaderboard error={body['error']}")
            return JSONResponse(body, status_code=500)
        return body

    # Static frontend
    frontend_dir = Path(__file__).resolve().parent.parent / "frontend"
    if frontend_dir.exists():
        app.mount("/", StaticFiles(directory=str(frontend_dir), html=True), name="frontend")

    return app


app = create_app()
