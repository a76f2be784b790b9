from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text
from sqlalchemy.sql import func
from ..database import Base


class Account(Base):
    """账号表 - 存储分类信息站点的登录账号

    约束：密码只以密文形式落库（见 utils/crypto.py），任何地方都不保存/记录明文。
    """
    __tablename__ = "accounts"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), nullable=False, index=True)
    encrypted_password = Column(Text, nullable=False)
    display_name = Column(String(255))
    is_active = Column(Boolean, default=True)
    last_synced_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
