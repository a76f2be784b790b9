"""账号管理 API"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..models import Account
from ..schemas import AccountCreate, AccountResponse
from ..services.background import schedule_account_sync
from ..utils.crypto import encrypt_secret, verify_ciphertext
from ..utils.errors import DecryptionFailed

router = APIRouter(prefix="/accounts", tags=["accounts"])


def _credentials_ok(ciphertext: str | None) -> bool:
    try:
        return verify_ciphertext(ciphertext or "")
    except DecryptionFailed:
        # 未配置 ENCRYPTION_KEY
        return False


def _build_account_response(account: Account) -> AccountResponse:
    return AccountResponse(
        id=account.id,
        email=account.email,
        display_name=account.display_name,
        is_active=bool(account.is_active),
        credentials_ok=_credentials_ok(account.encrypted_password),
        last_synced_at=account.last_synced_at,
        created_at=account.created_at,
        updated_at=account.updated_at,
    )


@router.post("", response_model=AccountResponse)
async def create_account(
    body: AccountCreate,
    db: AsyncSession = Depends(get_db),
):
    """添加/更新账号，并触发一次后台同步。

    说明：
    - 密码在这里加密后落库，之后只在同步/回复登录前解密。
    - 同一邮箱重复添加时，视为“更新密码 / 恢复账号”。
    """
    email = body.email.strip()
    if not email:
        raise HTTPException(status_code=422, detail="email 不能为空")

    # 未配置 ENCRYPTION_KEY 时抛出 DecryptionFailed，由全局 handler 转成 400
    ciphertext = encrypt_secret(body.password)

    result = await db.execute(select(Account).where(Account.email == email))
    account = result.scalars().first()

    if account:
        account.encrypted_password = ciphertext
        account.is_active = True
        if body.display_name is not None:
            account.display_name = body.display_name.strip() or None
    else:
        account = Account(
            email=email,
            encrypted_password=ciphertext,
            display_name=(body.display_name or "").strip() or None,
            is_active=True,
        )
        db.add(account)

    await db.commit()
    await db.refresh(account)
    schedule_account_sync(account.id)
    return _build_account_response(account)


@router.get("", response_model=list[AccountResponse])
async def list_accounts(db: AsyncSession = Depends(get_db)):
    """获取所有账号列表（只返回活跃账号）。"""
    result = await db.execute(
        select(Account).where(Account.is_active.is_(True)).order_by(Account.id.asc())
    )
    return [_build_account_response(a) for a in result.scalars().all()]


@router.get("/{account_id}", response_model=AccountResponse)
async def get_account(
    account_id: int,
    db: AsyncSession = Depends(get_db),
):
    """获取单个账号详情"""
    account = await db.get(Account, account_id)
    if not account:
        raise HTTPException(status_code=404, detail="Account not found")
    return _build_account_response(account)


@router.delete("/{account_id}")
async def delete_account(
    account_id: int,
    db: AsyncSession = Depends(get_db),
):
    """删除账号（软删除）"""
    account = await db.get(Account, account_id)
    if not account:
        raise HTTPException(status_code=404, detail="Account not found")

    account.is_active = False
    await db.commit()
    return {"message": "Account deleted successfully"}
