from pydantic import BaseModel, ConfigDict


class UserLogin(BaseModel):
    email: str
    password: str


class UserResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str
    email: str
    name: str
    role: str
    created_at: str


class TokenResponse(BaseModel):
    token: str
    user: UserResponse
