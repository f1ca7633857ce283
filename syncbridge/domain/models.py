from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, TypeDecorator, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from syncbridge.services.crypto import decrypt_credential, encrypt_credential


def new_opaque_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:20]}"


class EncryptedText(TypeDecorator):
    # Credentials are Fernet tokens at rest and plain strings in Python.
    impl = Text
    cache_ok = True

    def process_bind_param(self, value: str | None, dialect: Any) -> str:
        return encrypt_credential(value)

    def process_result_value(self, value: str | None, dialect: Any) -> str:
        return decrypt_credential(value)


class Base(DeclarativeBase):
    pass


class Organization(Base):
    __tablename__ = "organizations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(String, unique=True)
    name: Mapped[str] = mapped_column(String)
    # Tenant replication target; every integration table lives in this schema.
    replication_schema: Mapped[str] = mapped_column(String, default="public")
    readonly_connection_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    service_integrations: Mapped[list["ServiceIntegration"]] = relationship(
        back_populates="organization",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    def __init__(self, **kwargs: Any) -> None:
        kwargs.setdefault("replication_schema", "public")
        kwargs.setdefault("name", kwargs.get("key", ""))
        super().__init__(**kwargs)


class ServiceIntegration(Base):
    __tablename__ = "service_integrations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    opaque_id: Mapped[str] = mapped_column(String, unique=True, default=lambda: new_opaque_id("svi"))
    organization_id: Mapped[int] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), index=True)
    # Registry key selecting the integration implementation.
    service_name: Mapped[str] = mapped_column(String)
    table_name: Mapped[str] = mapped_column(String)
    api_url: Mapped[str] = mapped_column(Text, default="")
    webhook_secret: Mapped[str] = mapped_column(EncryptedText, default="")
    backfill_key: Mapped[str] = mapped_column(EncryptedText, default="")
    backfill_secret: Mapped[str] = mapped_column(EncryptedText, default="")
    # Orphaned dependents re-resolve through onboarding when their parent is removed.
    depends_on_id: Mapped[int | None] = mapped_column(
        ForeignKey("service_integrations.id", ondelete="SET NULL"), nullable=True, index=True
    )
    last_backfilled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    organization: Mapped[Organization] = relationship(back_populates="service_integrations", lazy="joined")
    depends_on: Mapped["ServiceIntegration | None"] = relationship(
        remote_side="ServiceIntegration.id",
        back_populates="dependents",
        lazy="selectin",
        join_depth=4,
    )
    dependents: Mapped[list["ServiceIntegration"]] = relationship(
        back_populates="depends_on",
        lazy="selectin",
        join_depth=4,
    )

    def __init__(self, **kwargs: Any) -> None:
        # Match column defaults before flush so transient integrations behave like loaded ones.
        kwargs.setdefault("opaque_id", new_opaque_id("svi"))
        for credential in ("api_url", "webhook_secret", "backfill_key", "backfill_secret"):
            kwargs.setdefault(credential, "")
        super().__init__(**kwargs)

    def __repr__(self) -> str:
        return f"<ServiceIntegration {self.opaque_id} {self.service_name}>"
