from __future__ import annotations

import importlib
import json
import os
from typing import Any, Callable, Dict, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from mdsm.core.errors import ConfigError


def resolve_handler(ref: Union[str, Callable[..., Any]]) -> Callable[..., Any]:
    """
    Accept a callable or a "package.module:function" reference.
    """
    if callable(ref):
        return ref
    if not isinstance(ref, str) or ":" not in ref:
        raise ValueError("handler must be callable or 'package.module:function'")
    module_path, _, attr = ref.partition(":")
    try:
        mod = importlib.import_module(module_path)
    except Exception as e:  # noqa: BLE001
        raise ValueError(f"failed to import {module_path}: {e}") from e
    fn = mod
    for part in attr.split("."):
        fn = getattr(fn, part, None)
        if fn is None:
            raise ValueError(f"{module_path} has no attribute {attr!r}")
    if not callable(fn):
        raise ValueError(f"{ref} is not callable")
    return fn


class HttpsConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    key: str = Field(min_length=1)
    cert: str = Field(min_length=1)
    passphrase: Optional[str] = None
    ca: Optional[str] = None


class EndpointSpec(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)
    url: str
    allowed_class_types: List[str] = Field(min_length=1, validation_alias=AliasChoices("allowed_class_types", "allowedClassTypes"))
    handler: Any

    @field_validator("handler")
    @classmethod
    def _resolve_handler(cls, v: Any) -> Callable[..., Any]:
        return resolve_handler(v)


class MdsmConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    mode: Literal["Port", "Middleware"]
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    bind_host: str = "0.0.0.0"
    https: Optional[HttpsConfig] = None
    endpoints: List[EndpointSpec] = Field(default_factory=list)
    default_ttl_ms: int = Field(default=0, ge=0)
    log_dir: str = "logs"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    events_path: str = os.path.join("logs", "events.jsonl")

    @model_validator(mode="after")
    def _port_required_in_port_mode(self) -> "MdsmConfig":
        if self.mode == "Port" and self.port is None:
            raise ValueError("port is required in Port mode")
        return self


def validate_config(raw: Union[MdsmConfig, Dict[str, Any]]) -> MdsmConfig:
    if isinstance(raw, MdsmConfig):
        return raw
    if not isinstance(raw, dict):
        raise ConfigError("Configuration must be a mapping.")
    try:
        return MdsmConfig.model_validate(raw)
    except ValidationError as e:
        errors = [{"loc": list(err.get("loc", ())), "msg": err.get("msg")} for err in e.errors()]
        raise ConfigError("Invalid MDSM configuration.", errors=errors) from e


def load_config(path: str) -> MdsmConfig:
    if not os.path.exists(path):
        raise ConfigError("Configuration file not found.", path=path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError("Configuration file is not valid JSON.", path=path, error=str(e)) from e
    return validate_config(raw)
