# chathub/storage/catalog.py
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from chathub.storage.database import session_scope
from chathub.storage.models import AvailableModel

log = logging.getLogger("chathub.catalog")

_EDITABLE = {"display_name", "description", "provider", "is_active"}

DEFAULT_MODELS: List[Dict[str, Any]] = [
    {"name": "gemma:2b", "display_name": "Gemma 2B", "description": "Google Gemma, 2B parameters"},
    {"name": "phi:2.7b", "display_name": "Phi-2", "description": "Microsoft Phi-2, 2.7B parameters"},
    {"name": "mistral:7b", "display_name": "Mistral 7B", "description": "Mistral AI, 7B parameters"},
]


def _invalidate() -> None:
    # Imported lazily: the registry reads from this module
    from chathub.providers.model_registry import model_registry

    model_registry.invalidate()


def model_to_dict(m: AvailableModel) -> Dict[str, Any]:
    return {
        "name": m.name,
        "display_name": m.display_name,
        "description": m.description,
        "provider": m.provider,
        "is_active": bool(m.is_active),
        "created_at": m.created_at.isoformat() if m.created_at else None,
    }


def list_models(active_only: bool = True) -> List[AvailableModel]:
    with session_scope() as s:
        q = select(AvailableModel).order_by(AvailableModel.name.asc())
        if active_only:
            q = q.where(AvailableModel.is_active.is_(True))
        return list(s.scalars(q))


def get_model(name: str) -> Optional[AvailableModel]:
    with session_scope() as s:
        return s.scalars(select(AvailableModel).where(AvailableModel.name == name)).first()


def find_active_names(provider: str) -> List[str]:
    with session_scope() as s:
        return list(
            s.scalars(
                select(AvailableModel.name)
                .where(AvailableModel.is_active.is_(True), AvailableModel.provider == provider)
                .order_by(AvailableModel.name.asc())
            )
        )


def create_model(
    name: str,
    *,
    display_name: Optional[str] = None,
    description: Optional[str] = None,
    provider: str = "ollama",
    is_active: bool = True,
) -> Optional[AvailableModel]:
    """Insert a catalog row; None when the name is taken."""
    if get_model(name) is not None:
        return None
    row = AvailableModel(
        name=name,
        display_name=display_name,
        description=description,
        provider=provider,
        is_active=is_active,
    )
    try:
        with session_scope() as s:
            s.add(row)
    except IntegrityError:
        # Lost a race with a concurrent insert of the same name
        log.info({"event": "catalog.create_conflict", "model": name})
        return None
    _invalidate()
    log.info({"event": "catalog.created", "model": name, "provider": provider})
    return row


def update_model(name: str, data: Dict[str, Any]) -> Optional[AvailableModel]:
    with session_scope() as s:
        row = s.scalars(select(AvailableModel).where(AvailableModel.name == name)).first()
        if row is None:
            return None
        for k, v in data.items():
            if k in _EDITABLE and v is not None:
                setattr(row, k, v)
        s.add(row)
        s.flush()
    _invalidate()
    log.info({"event": "catalog.updated", "model": name})
    return row


def delete_model(name: str) -> bool:
    with session_scope() as s:
        row = s.scalars(select(AvailableModel).where(AvailableModel.name == name)).first()
        if row is None:
            return False
        s.delete(row)
    _invalidate()
    log.info({"event": "catalog.deleted", "model": name})
    return True


def seed_defaults() -> int:
    """Insert the default local models that are missing. Returns how many were added."""
    added = 0
    for entry in DEFAULT_MODELS:
        if create_model(entry["name"], display_name=entry["display_name"], description=entry["description"]):
            added += 1
    return added
