from datetime import datetime

from pydantic import BaseModel, Field


class AccountCreate(BaseModel):
    """创建/更新账号的请求模型。

    密码只在服务端加密后落库；同一邮箱重复添加时视为“更新密码 / 恢复账号”。
    """

    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1, repr=False)
    display_name: str | None = Field(default=None, max_length=255)


class AccountResponse(BaseModel):
    """账号响应模型（从不返回密码或密文）"""

    id: int
    email: str
    display_name: str | None = None
    is_active: bool
    # 密文能否用当前 ENCRYPTION_KEY 解开；换 key 后需要重新录入密码
    credentials_ok: bool
    last_synced_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    class Config:
        from_attributes = True
