# backend/app/api/v1/auth.py
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from app.db.database import get_db
from app.services import user_service
from app.schemas.user import UserCreate, UserLogin, UserProfile, UserPublic, Token

router = APIRouter()

@router.post("/register", response_model=UserPublic, status_code=status.HTTP_201_CREATED)
async def register(user_in: UserCreate, db: AsyncSession = Depends(get_db)):
    """회원가입 엔드포인트: 서비스로 로직 위임"""
    return await user_service.register_user(db, user_in)

@router.post("/login", response_model=Token)
async def login(user_in: UserLogin, db: AsyncSession = Depends(get_db)):
    """로그인 엔드포인트: 서비스로부터 인증 결과 수신"""
    auth_result = await user_service.authenticate_user(db, user_in)

    if not auth_result:
        raise HTTPException(status_code=401, detail="Invalid email or password")

    return auth_result

@router.get("/users/{user_id}", response_model=UserProfile)
async def get_user_profile(user_id: int, db: AsyncSession = Depends(get_db)):
    """공개 프로필 조회"""
    return await user_service.get_profile(db, user_id)
