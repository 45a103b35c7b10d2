"""Pydantic models for fusion-mlmodel."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Callable, NamedTuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import ConfigError

__all__ = [
    "DEFAULT_FUSION_PORT",
    "FusionConfig",
    "FusionCredentials",
    "FusionEndpoint",
    "Manifest",
    "ManifestResult",
    "PersistenceBinding",
    "PublishResult",
    "SPARK_ML",
    "SPARK_MLLIB",
]

DEFAULT_FUSION_PORT = 8764

# Model type tags understood by Fusion
SPARK_MLLIB = "spark-mllib"
SPARK_ML = "spark-ml"


class Manifest(BaseModel):
    """
    Model descriptor written next to the model's native files.

    Field order is the serialization order, so manifests stay diff-friendly
    across saves.
    """

    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    id: str
    model_type: str = Field(alias="modelType")
    model_class_name: str = Field(alias="modelClassName")
    feature_fields: list[str] | None = Field(default=None, alias="featureFields")
    vectorizer: list[dict[str, Any]] | None = None

    @property
    def filename(self) -> str:
        return f"{self.model_type}.json"

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True, indent=2)


class ManifestResult(BaseModel):
    """A built manifest plus the metadata left over for upload parameters."""

    manifest: Manifest
    params: dict[str, str] = Field(default_factory=dict)


class PersistenceBinding(NamedTuple):
    """Normalized result of persistence dispatch: a type tag and a saver."""

    model_type: str
    save: Callable[[Path], None]


class FusionEndpoint(BaseModel):
    host: str
    port: int = DEFAULT_FUSION_PORT

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"


class FusionCredentials(BaseModel):
    """Login details for a Fusion security realm."""

    username: str
    password: str
    realm: str = "native"


class FusionConfig(BaseModel):
    """Connection and staging settings for publishing models to Fusion."""

    host: str = f"localhost:{DEFAULT_FUSION_PORT}"
    username: str | None = None
    password: str | None = None
    realm: str = "native"
    staging_root: Path = Path(".")
    timeout_s: float = Field(default=60.0, gt=0)
    max_auth_retries: int = Field(default=1, ge=0)

    @property
    def credentials(self) -> FusionCredentials | None:
        if not self.username:
            return None
        return FusionCredentials(
            username=self.username,
            password=self.password or "",
            realm=self.realm,
        )

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "FusionConfig":
        """Build a config from ``FUSION_*`` environment variables."""
        env = os.environ if environ is None else environ
        mapping = {
            "host": "FUSION_HOST",
            "username": "FUSION_USER",
            "password": "FUSION_PASSWORD",
            "realm": "FUSION_REALM",
            "staging_root": "FUSION_STAGING_ROOT",
            "timeout_s": "FUSION_TIMEOUT",
        }
        values = {field: env[var] for field, var in mapping.items() if env.get(var)}
        try:
            return cls.model_validate(values)
        except ValidationError as exc:
            raise ConfigError(f"Invalid Fusion configuration: {exc}") from exc


class PublishResult(BaseModel):
    """What a publish (or package-only) run left behind."""

    model_config = ConfigDict(protected_namespaces=())

    model_id: str
    model_dir: Path
    archive_path: Path
    manifest: Manifest
    params: dict[str, str]
    entries: list[str] = Field(default_factory=list)
    status_code: int | None = None
