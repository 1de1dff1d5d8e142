"""
Agent options.
"""

from typing import Optional
from pydantic import BaseModel, Field, field_validator, model_validator

from pan_agent.namespace import Id

DEFAULT_TTL = 8
MAX_TTL = 32
DEFAULT_REQUEST_TIMEOUT_MS = 10_000
DEFAULT_CONNECT_TIMEOUT_MS = 8_000


class AgentOptions(BaseModel):
    url: str = Field(min_length=1)
    app_id: str
    namespace: Optional[str] = None
    default_ttl: int = Field(default=DEFAULT_TTL, ge=0)
    max_ttl: int = Field(default=MAX_TTL, ge=0)
    request_timeout_ms: int = Field(default=DEFAULT_REQUEST_TIMEOUT_MS, gt=0)
    connect_timeout_ms: int = Field(default=DEFAULT_CONNECT_TIMEOUT_MS, gt=0)
    debug: bool = False

    @field_validator("app_id", "namespace")
    @classmethod
    def _must_be_uuid(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return Id(value).value

    @model_validator(mode="after")
    def _namespace_defaults_to_app_id(self) -> "AgentOptions":
        if self.namespace is None:
            self.namespace = self.app_id
        return self
