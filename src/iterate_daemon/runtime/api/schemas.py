"""Pydantic request schemas for the daemon API routes."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CreateIterationRequest(_Request):
    """Payload for creating one iteration."""

    name: str = ""
    base_branch: Optional[str] = Field(default=None, alias="baseBranch")


class PickIterationRequest(_Request):
    """Payload for picking the winning iteration."""

    name: str
    strategy: Literal["merge", "squash", "rebase"] = "merge"


class CommandRequest(_Request):
    """Payload for spawning several variations from one prompt."""

    command: str
    prompt: str = ""
    count: int = 3
    base_branch: Optional[str] = Field(default=None, alias="baseBranch")
