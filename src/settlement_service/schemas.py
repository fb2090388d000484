"""Pydantic response models for the operational API."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict


class ConservationStatus(BaseModel):
    """Outcome of the most recent fund conservation check."""

    model_config = ConfigDict(extra="forbid")
    ok: bool
    total_balances: str
    external_net: str
    mismatched_accounts: list[str]
    checked_at: str


class HealthResponse(BaseModel):
    """Response model for GET /health."""

    model_config = ConfigDict(extra="forbid")
    status: Literal["ok"]
    uptime_seconds: float
    started_at: str
    total_tasks: int
    tasks_by_status: dict[str, int]
    total_escrowed: str
    total_wallets: int
    open_disputes: int
    transfers_by_status: dict[str, int]
    scheduler_running: bool
    last_conservation_check: ConservationStatus | None

