"""Capabilities passed into the admission layer instead of role strings."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Subscriber:
    """May create, submit and resubmit their own letters."""

    user_id: str

    @property
    def audit_actor(self) -> str:
        return f"subscriber:{self.user_id}"


@dataclass(frozen=True)
class Reviewer:
    """May claim, approve, reject and complete letters in review."""

    user_id: str

    @property
    def audit_actor(self) -> str:
        return f"reviewer:{self.user_id}"


@dataclass(frozen=True)
class SystemActor:
    """Background jobs: generation callbacks, sweeps, scheduled resets."""

    name: str = "system"

    @property
    def audit_actor(self) -> str:
        return self.name


SYSTEM = SystemActor()
