# chathub/storage/provider_keys.py
from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select, update

from chathub.storage.database import session_scope
from chathub.storage.models import ProviderKey, utcnow


def mask_key(api_key: str) -> str:
    if len(api_key) <= 8:
        return "*" * len(api_key)
    return f"{api_key[:4]}...{api_key[-4:]}"


def set_key(user_id: str, provider: str, api_key: str) -> ProviderKey:
    with session_scope() as s:
        row = s.scalars(
            select(ProviderKey).where(ProviderKey.user_id == user_id, ProviderKey.provider == provider)
        ).first()
        if row is None:
            row = ProviderKey(user_id=user_id, provider=provider, api_key=api_key, is_active=True)
        else:
            row.api_key = api_key
            row.is_active = True
        s.add(row)
    return row


def get_active_key(user_id: str, provider: str) -> Optional[str]:
    with session_scope() as s:
        return s.scalar(
            select(ProviderKey.api_key).where(
                ProviderKey.user_id == user_id,
                ProviderKey.provider == provider,
                ProviderKey.is_active.is_(True),
            )
        )


def touch_key_usage(user_id: str, provider: str) -> None:
    with session_scope() as s:
        s.execute(
            update(ProviderKey)
            .where(ProviderKey.user_id == user_id, ProviderKey.provider == provider)
            .values(usage_count=ProviderKey.usage_count + 1, last_used_at=utcnow())
        )


def delete_key(user_id: str, provider: str) -> bool:
    with session_scope() as s:
        res = s.execute(
            delete(ProviderKey).where(ProviderKey.user_id == user_id, ProviderKey.provider == provider)
        )
        return bool(res.rowcount)


def list_keys(user_id: str) -> List[Dict[str, Any]]:
    with session_scope() as s:
        rows = list(s.scalars(select(ProviderKey).where(ProviderKey.user_id == user_id).order_by(ProviderKey.provider)))
    return [
        {
            "provider": r.provider,
            "api_key": mask_key(r.api_key),
            "is_active": bool(r.is_active),
            "usage_count": r.usage_count or 0,
            "last_used_at": r.last_used_at.isoformat() if r.last_used_at else None,
        }
        for r in rows
    ]
