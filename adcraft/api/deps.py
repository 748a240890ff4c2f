"""Shared FastAPI dependencies."""

from __future__ import annotations

from fastapi import Header, HTTPException, Request, status

from adcraft.config import Settings
from adcraft.jobs.orchestrator import Orchestrator


def get_app_settings(request: Request) -> Settings:
  return request.app.state.settings


def get_orchestrator(request: Request) -> Orchestrator:
  return request.app.state.orchestrator


async def get_owner_id(x_owner_id: str | None = Header(default=None)) -> str:
  """Resolve the caller identity supplied by the upstream session layer."""
  owner_id = (x_owner_id or "").strip()
  if not owner_id:
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-Owner-Id header.")
  return owner_id
