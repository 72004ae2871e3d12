from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Literal


class TreeConfig(BaseModel):
    """Shape parameters both peers must agree on to get comparable trees."""

    model_config = ConfigDict(frozen=True)

    key_width: int = Field(default=8, ge=1, le=32)
    fanout_bits: int = Field(default=5, ge=1, le=16)

    @property
    def max_key(self) -> int:
        return (1 << (8 * self.key_width)) - 1


class DiffConfig(BaseModel):
    fetch_timeout: float = Field(default=10.0, gt=0)
    diff_timeout: float | None = Field(default=None, gt=0)


class ReportConfig(BaseModel):
    max_entries: int = Field(default=1000, gt=0)
    max_divergences: int | None = Field(default=None, gt=0)
    time_budget: float | None = Field(default=None, gt=0)


class PeerConfig(BaseModel):
    base_url: str | None = None
    token_env: str = "DRIFTWATCH_PEER_TOKEN"
    timeout: float = Field(default=10.0, gt=0)
    verify_tls: bool = True

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str | None) -> str | None:
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"base_url must use http or https scheme, got {v!r}")
        return v.rstrip("/")


class DriftwatchConfig(BaseModel):
    tree: TreeConfig = Field(default_factory=TreeConfig)
    diff: DiffConfig = Field(default_factory=DiffConfig)
    report: ReportConfig = Field(default_factory=ReportConfig)
    peer: PeerConfig = Field(default_factory=PeerConfig)
    ruleset: str | None = None
    log_level: Literal["debug", "info", "warn", "error"] = "info"
    log_format: Literal["text", "json"] = "text"
