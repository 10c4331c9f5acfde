from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from sqlalchemy import DateTime, String, Text, create_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .models import (
    AutomationRule,
    PlatformConnection,
    Service,
    StoreDocument,
)

logger = logging.getLogger(__name__)


class DocumentStoreBase(DeclarativeBase):
    pass


class _StoreDocumentRow(DocumentStoreBase):
    __tablename__ = "store_documents"

    store_key: Mapped[str] = mapped_column(String(64), primary_key=True)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def default_document() -> StoreDocument:
    return StoreDocument(
        connections=[
            PlatformConnection(platform="Facebook"),
            PlatformConnection(platform="Instagram"),
            PlatformConnection(platform="TikTok"),
            PlatformConnection(platform="WhatsApp"),
        ],
        services=[
            Service(
                id="serv1",
                name="Botox Application",
                price="$250",
                description="Per area, reduces wrinkles and fine lines.",
            ),
            Service(
                id="serv2",
                name="Full Facial Cleansing",
                price="$80",
                description="Deep cleansing, exfoliation, and hydration.",
            ),
            Service(
                id="serv3",
                name="Laser Hair Removal (Legs)",
                price="$150",
                description="Full leg session using diode laser.",
            ),
        ],
        automation_rules=[
            AutomationRule(
                id="rule1",
                platform="Facebook",
                keywords=["price", "info", "cost"],
                public_reply="¡Hola! Te hemos enviado la información por mensaje directo 👋",
                system_prompt=(
                    "You are a friendly and professional salon assistant. The user commented asking for "
                    "price/info. Provide the pricing for a Full Facial Cleansing, which is $80, and ask if "
                    "they would like to book an appointment."
                ),
            ),
            AutomationRule(
                id="rule2",
                platform="Instagram",
                keywords=["appointment", "book"],
                public_reply="¡Claro! Te envío un DM para agendar tu cita. ✨",
                system_prompt=(
                    "You are a friendly and efficient salon assistant. The user wants to book an "
                    "appointment. Encourage them to pick a slot that works for them."
                ),
            ),
            AutomationRule(
                id="rule3",
                platform="TikTok",
                keywords=["info", "precio", "agendar"],
                public_reply="¡Hola! Revisa el enlace en nuestro perfil para ver todos los precios y agendar. 💖",
                system_prompt=(
                    "You are a fun and trendy salon assistant for TikTok. Publicly tell the user to check "
                    "the link in the bio for all info and booking, using emojis."
                ),
            ),
        ],
    )


class DocumentBackend(Protocol):
    def load(self) -> StoreDocument: ...

    def save(self, document: StoreDocument) -> None: ...

    def reset(self) -> None: ...


class InMemoryDocumentBackend:
    def __init__(self, document: StoreDocument | None = None) -> None:
        self._document = (document or default_document()).model_copy(deep=True)

    def load(self) -> StoreDocument:
        return self._document.model_copy(deep=True)

    def save(self, document: StoreDocument) -> None:
        self._document = document.model_copy(deep=True)

    def reset(self) -> None:
        self._document = default_document()


class JsonFileDocumentBackend:
    """Whole-document JSON file; every save rewrites the file."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> StoreDocument:
        if not self._path.is_file():
            logger.info("store document %s not found, creating with default values", self._path)
            document = default_document()
            self.save(document)
            return document
        try:
            return StoreDocument.model_validate_json(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.error("store document %s is unreadable, reinitializing: %s", self._path, exc)
            self._path.unlink(missing_ok=True)
            document = default_document()
            self.save(document)
            return document

    def save(self, document: StoreDocument) -> None:
        if self._path.parent and not self._path.parent.exists():
            self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(document.model_dump_json(indent=2), encoding="utf-8")

    def reset(self) -> None:
        self._path.unlink(missing_ok=True)


class SqlAlchemyDocumentBackend:
    _STORE_KEY = "default"

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for INBOX_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            DocumentStoreBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def load(self) -> StoreDocument:
        with self._session() as session:
            row = session.get(_StoreDocumentRow, self._STORE_KEY)
            payload = row.payload if row is not None else None
        if payload is None:
            document = default_document()
            self.save(document)
            return document
        try:
            return StoreDocument.model_validate_json(payload)
        except ValueError as exc:
            logger.error("persisted store document is invalid, reinitializing: %s", exc)
            document = default_document()
            self.save(document)
            return document

    def save(self, document: StoreDocument) -> None:
        payload = document.model_dump_json()
        now = _now_utc()
        with self._session() as session:
            with session.begin():
                row = session.get(_StoreDocumentRow, self._STORE_KEY)
                if row is None:
                    session.add(
                        _StoreDocumentRow(
                            store_key=self._STORE_KEY,
                            payload=payload,
                            updated_at=now,
                        )
                    )
                    return
                row.payload = payload
                row.updated_at = now

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_StoreDocumentRow).delete()


def create_document_backend(*, backend: str, store_path: str, database_url: str) -> DocumentBackend:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyDocumentBackend(database_url)
    if normalized == "inmemory":
        return InMemoryDocumentBackend()
    if normalized == "file":
        return JsonFileDocumentBackend(store_path)
    raise RuntimeError(f"unsupported INBOX_STORE_BACKEND: {backend}")
