from pydantic import BaseModel, ConfigDict, EmailStr, Field
from datetime import datetime
from typing import Optional

class UserCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    password: str = Field(..., min_length=6, max_length=72)
    bio: Optional[str] = None

class UserLogin(BaseModel):
    email: EmailStr
    password: str

class UserPublic(BaseModel):
    """채팅 화면에 노출되는 공개 프로필 필드"""
    id: int
    nome: str
    email: str
    foto_perfil: Optional[str] = None
    descricao: Optional[str] = None

class UserProfile(UserPublic):
    data_criacao: datetime

class Token(BaseModel):
    access_token: str
    token_type: str
    user: UserPublic
