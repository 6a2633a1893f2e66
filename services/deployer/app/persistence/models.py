"""SQLAlchemy models for the deployer service."""
from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Enum, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class Category(enum.Enum):
    ids = "ids"
    accounts = "accounts"
    services = "services"
    layers = "layers"
    resources = "resources"


class StepAction(enum.Enum):
    create = "create"
    update = "update"
    delete = "delete"


class StepStatus(enum.Enum):
    pending = "pending"
    running = "running"
    succeeded = "succeeded"
    failed = "failed"


class DeploymentStatus(enum.Enum):
    """Status shared by applications, plans and entity records."""

    deploying = "deploying"
    deployed = "deployed"
    failed = "failed"


class App(Base):
    __tablename__ = "app"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    short_id: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    status: Mapped[DeploymentStatus] = mapped_column(Enum(DeploymentStatus), nullable=False)
    deployed: Mapped[str | None] = mapped_column(String)
    deploying: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    resource_counter: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    deployed_at: Mapped[datetime | None] = mapped_column(default=None)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, onupdate=datetime.utcnow)

    plans: Mapped[list["Plan"]] = relationship(back_populates="app", cascade="all, delete-orphan")
    entities: Mapped[list["EntityState"]] = relationship(back_populates="app", cascade="all, delete-orphan")


class Plan(Base):
    __tablename__ = "plan"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    app_id: Mapped[str] = mapped_column(ForeignKey("app.id"), nullable=False)
    plan_id: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[DeploymentStatus] = mapped_column(Enum(DeploymentStatus), nullable=False)
    error: Mapped[Any | None] = mapped_column(JSON(none_as_null=True))
    request_ref: Mapped[str] = mapped_column(String, nullable=False)
    waves: Mapped[list[list[str]] | None] = mapped_column(JSON(none_as_null=True))
    deployed_at: Mapped[datetime] = mapped_column(default=datetime.utcnow)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, onupdate=datetime.utcnow)

    app: Mapped[App] = relationship(back_populates="plans")
    steps: Mapped[list["PlanStep"]] = relationship(
        back_populates="plan",
        cascade="all, delete-orphan",
        order_by="PlanStep.sequence",
    )

    __table_args__ = (UniqueConstraint("app_id", "plan_id", name="uq_plan_app_plan"),)


class PlanStep(Base):
    __tablename__ = "plan_step"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    plan_ref: Mapped[str] = mapped_column(ForeignKey("plan.id"), nullable=False)
    step_id: Mapped[str] = mapped_column(String, nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    wave_index: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[Category] = mapped_column(Enum(Category), nullable=False)
    action: Mapped[StepAction] = mapped_column(Enum(StepAction), nullable=False)
    target_id: Mapped[str] = mapped_column(String, nullable=False)
    data: Mapped[dict[str, Any] | None] = mapped_column(JSON(none_as_null=True))
    status: Mapped[StepStatus] = mapped_column(Enum(StepStatus), nullable=False, default=StepStatus.pending)
    progress: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    updated_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, onupdate=datetime.utcnow)

    plan: Mapped[Plan] = relationship(back_populates="steps")

    __table_args__ = (UniqueConstraint("plan_ref", "step_id", name="uq_step_plan_step"),)


class EntityState(Base):
    __tablename__ = "entity_state"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    app_id: Mapped[str] = mapped_column(ForeignKey("app.id"), nullable=False)
    category: Mapped[Category] = mapped_column(Enum(Category), nullable=False)
    entity_id: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[DeploymentStatus | None] = mapped_column(Enum(DeploymentStatus))
    deployed: Mapped[Any | None] = mapped_column(JSON(none_as_null=True))
    output: Mapped[Any | None] = mapped_column(JSON(none_as_null=True))
    error: Mapped[Any | None] = mapped_column(JSON(none_as_null=True))
    deploying: Mapped[Any | None] = mapped_column(JSON(none_as_null=True))
    updated_at: Mapped[datetime] = mapped_column(default=datetime.utcnow)

    app: Mapped[App] = relationship(back_populates="entities")

    __table_args__ = (UniqueConstraint("app_id", "category", "entity_id", name="uq_entity_app_category_id"),)


class AuditLog(Base):
    __tablename__ = "audit_log"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    principal: Mapped[str] = mapped_column(String, nullable=False)
    action: Mapped[str] = mapped_column(String, nullable=False)
    old_val: Mapped[dict[str, Any] | None] = mapped_column(JSON(none_as_null=True))
    new_val: Mapped[dict[str, Any] | None] = mapped_column(JSON(none_as_null=True))
    correlation_id: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow)


__all__ = [
    "Base",
    "App",
    "Plan",
    "PlanStep",
    "EntityState",
    "AuditLog",
    "Category",
    "StepAction",
    "StepStatus",
    "DeploymentStatus",
]
