# backend/app/api/v1/routers.py
from fastapi import APIRouter
from app.api.v1 import chat, auth

# 메인 API 라우터 (/v1)
api_router = APIRouter(prefix="/v1")

# 1. 인증 라우터
api_router.include_router(auth.router, prefix="/auth", tags=["auth"])

# 2. 채팅 라우터 (대화방/메시지 REST)
api_router.include_router(chat.router, prefix="/chat", tags=["chat"])
