# backend/app/services/user_service.py
import logging
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from app.core.exceptions import Conflict, InvalidRequest, NotFound
from app.core.security import create_access_token, get_password_hash, verify_password
from app.db.models.user import User
from app.schemas.user import Token, UserCreate, UserLogin, UserProfile, UserPublic

logger = logging.getLogger(__name__)

SEARCH_MIN_LENGTH = 2
SEARCH_LIMIT = 10


def to_public(user: User) -> UserPublic:
    return UserPublic(
        id=user.id,
        nome=user.name.strip(),
        email=user.email,
        foto_perfil=user.profile_photo,
        descricao=user.bio,
    )


async def register_user(db: AsyncSession, user_in: UserCreate) -> UserPublic:
    """
    회원가입: 이메일 중복 확인 후 유저 생성
    """
    result = await db.execute(select(User).where(User.email == user_in.email))
    if result.scalars().first():
        raise Conflict("Email already registered")

    new_user = User(
        name=user_in.name,
        email=user_in.email,
        password=get_password_hash(user_in.password),
        bio=user_in.bio,
    )
    db.add(new_user)
    try:
        await db.commit()
    except IntegrityError:
        # 동시에 같은 이메일로 가입한 경우
        await db.rollback()
        raise Conflict("Email already registered")
    await db.refresh(new_user)
    logger.info(f"[UserService] 유저 생성: {new_user.id} ({new_user.email})")
    return to_public(new_user)


async def authenticate_user(db: AsyncSession, user_in: UserLogin) -> Optional[Token]:
    """
    로그인: 자격 증명 확인 및 토큰 발급. 실패 시 None (라우터에서 401 처리)
    """
    result = await db.execute(select(User).where(User.email == user_in.email))
    user = result.scalars().first()

    if not user or not verify_password(user_in.password, user.password):
        logger.info(f"[UserService] 로그인 실패: {user_in.email}")
        return None

    access_token = create_access_token(data={"sub": str(user.id)})
    return Token(access_token=access_token, token_type="bearer", user=to_public(user))


async def get_user(db: AsyncSession, user_id: int) -> User:
    user = await db.get(User, user_id)
    if not user:
        raise NotFound(f"User {user_id} not found")
    return user


async def get_profile(db: AsyncSession, user_id: int) -> UserProfile:
    user = await get_user(db, user_id)
    return UserProfile(**to_public(user).model_dump(), data_criacao=user.created_at)


async def require_users(db: AsyncSession, user_ids: List[int]) -> None:
    """주어진 ID가 모두 존재하는지 확인합니다."""
    wanted = set(user_ids)
    result = await db.execute(select(User.id).where(User.id.in_(wanted)))
    missing = wanted - set(result.scalars().all())
    if missing:
        raise NotFound(f"User {min(missing)} not found")


async def search_users(db: AsyncSession, term: Optional[str], requester_id: int) -> List[UserPublic]:
    """
    이름/이메일/소개에 부분 일치하는 유저 검색 (요청자 본인 제외)
    """
    term = (term or "").strip()
    if len(term) < SEARCH_MIN_LENGTH:
        raise InvalidRequest(f"Search term must have at least {SEARCH_MIN_LENGTH} characters")

    pattern = f"%{term}%"
    stmt = (
        select(User)
        .where(
            or_(User.name.ilike(pattern), User.email.ilike(pattern), User.bio.ilike(pattern)),
            User.id != requester_id,
        )
        .order_by(User.name, User.id)
        .limit(SEARCH_LIMIT)
    )
    result = await db.execute(stmt)
    return [to_public(u) for u in result.scalars().all()]
