from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
import logging
import os
from dotenv import load_dotenv

from pathlib import Path

# 현재 파일(main.py)의 위치: backend/app/main.py
# 루트 .env 위치: backend/app/../../.env -> Project Root
env_path = Path(__file__).resolve().parent.parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

from app.api.v1.routers import api_router
from app.sockets.chat_socket import router as chat_socket_router
from app.core.exceptions import ChatError
from app.db.database import init_db, engine, AsyncSessionLocal, DB_QUERY_TIMEOUT
from app.realtime.session_registry import SessionRegistry
from app.realtime.chat_event_handler import ChatEventHandler
from app.services.conversation_service import PairLocks

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)


app = FastAPI(title="Chat API")

# CORS (Cross-Origin Resource Sharing) 미들웨어 설정
origins_env = os.getenv("ALLOWED_ORIGINS", "*")
origins = [origin.strip() for origin in origins_env.split(",")]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,  # 환경 변수 기반 설정
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def install_chat_state(target: FastAPI, session_factory=AsyncSessionLocal, query_timeout: float = DB_QUERY_TIMEOUT):
    """
    프로세스 단위 상태(세션 레지스트리, 이벤트 핸들러, 1:1 대화방 생성 락)를 생성해 app.state에 연결합니다.
    """
    registry = SessionRegistry()
    target.state.pair_locks = PairLocks()
    target.state.registry = registry
    target.state.chat_handler = ChatEventHandler(registry, session_factory, query_timeout)
    return registry


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    # 스키마에 맞지 않는 요청(누락/알 수 없는 필드)은 InvalidRequest(400)로 통일
    return JSONResponse(status_code=400, content={"detail": "Invalid request", "errors": jsonable_encoder(exc.errors())})


# 서버 시작 시 실행되는 이벤트 핸들러
@app.on_event("startup")
async def on_startup():
    """
    1. DB 초기화 (테이블 생성)
    2. 라이브 채널 세션 레지스트리 / 대화방 생성 락 생성
    """
    await init_db()
    install_chat_state(app)
    logger.info("[Main] 서버 시작 완료")

# 라우터 등록
# REST API와 WebSocket 엔드포인트를 메인 앱에 연결합니다.
app.include_router(api_router)
app.include_router(chat_socket_router)

@app.get("/")
async def root():
    """
    서버 상태 확인용 루트 엔드포인트입니다.
    """
    return {"message": "Welcome to Chat API"}

@app.on_event("shutdown")
async def on_shutdown():
    """
    서버 종료 시 커넥션 풀을 정리합니다.
    """
    await engine.dispose()
