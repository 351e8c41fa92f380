"""Application configuration models and helpers.

The configuration lives in a YAML file (``config.yaml`` by default) and is
validated with ``pydantic`` models.  Every section has defaults, so an empty
file (or :meth:`Settings.default`) gives a working setup rooted in the current
directory; tests use that to build throwaway environments under ``tmp_path``.
"""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional, Tuple

import yaml
from pydantic import BaseModel, Field, field_validator


class PathsConfig(BaseModel):
    """Filesystem locations used by the pipelines."""

    store_file: Path = Field(Path("data/store.json"), description="JSON file backing the record store")
    catalog_file: Optional[Path] = Field(
        default=None,
        description="Optional Excel/CSV sheet with the internal product catalogue",
    )
    export_folder: Path = Field(Path("data/exports"), description="Folder for OFX reports and payload dumps")
    log_folder: Path = Field(Path("data/logs"), description="Folder for execution logs")

    @field_validator("store_file", "catalog_file", "export_folder", "log_folder", mode="before")
    @classmethod
    def _expand_path(cls, value: Optional[str]) -> Optional[Path]:
        if value is None:
            return None
        return Path(value).expanduser().resolve()

    def ensure_directories(self) -> None:
        """Create the directories required for the pipelines to operate."""

        self.store_file.parent.mkdir(parents=True, exist_ok=True)
        self.export_folder.mkdir(parents=True, exist_ok=True)
        self.log_folder.mkdir(parents=True, exist_ok=True)


class ValidationConfig(BaseModel):
    """Fiscal validation rules."""

    total_tolerance: float = Field(0.01, description="Accepted difference between computed and declared totals")
    ncm_placeholder: str = Field("00000000", description="NCM used when an item carries an invalid one")
    valid_cfop_first_digits: List[str] = Field(default_factory=lambda: ["1", "2", "3", "5", "6", "7"])
    outbound_cfop_range: Tuple[int, int] = Field((5100, 5999), description="Outbound CFOPs shifted on inbound notes")

    @field_validator("total_tolerance")
    @classmethod
    def _validate_tolerance(cls, value: float) -> float:
        if value < 0:
            raise ValueError("total_tolerance must not be negative")
        return value

    @field_validator("ncm_placeholder")
    @classmethod
    def _validate_placeholder(cls, value: str) -> str:
        if len(value) != 8 or not value.isdigit():
            raise ValueError("ncm_placeholder must have exactly 8 digits")
        return value


class LinkingConfig(BaseModel):
    """Product link suggestion tuning."""

    suggestion_limit: int = Field(10, description="Maximum number of suggestions returned per item")
    min_coverage: float = Field(0.7, description="Share of description terms a product must contain")
    strong_similarity: float = Field(0.9, description="Similarity from which a match is reported as 'description'")

    @field_validator("suggestion_limit")
    @classmethod
    def _validate_limit(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("suggestion_limit must be greater than zero")
        return value

    @field_validator("min_coverage", "strong_similarity")
    @classmethod
    def _validate_ratio(cls, value: float) -> float:
        if not 0 < value <= 1:
            raise ValueError("ratios must be within (0, 1]")
        return value


class OFXConfig(BaseModel):
    """Bank statement import limits."""

    max_bytes: int = Field(5 * 1024 * 1024, description="Largest OFX payload accepted")
    match_tolerance: float = Field(0.01, description="Amount difference accepted when matching open titles")

    @field_validator("max_bytes")
    @classmethod
    def _validate_size(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("max_bytes must be greater than zero")
        return value


class PostingConfig(BaseModel):
    """Ledger side effects of posting an entry note."""

    purchase_nature_code: str = Field("4.01", description="Financial nature used for generated payables")
    payable_status: str = Field("em_aberto", description="Status of generated payables")


class APIConfig(BaseModel):
    host: str = Field("127.0.0.1", description="Interface the HTTP API binds to")
    port: int = Field(8000, description="Port of the HTTP API")
    default_company_id: str = Field("default", description="Tenant used when a request does not name one")


class Settings(BaseModel):
    """Top level configuration object."""

    paths: PathsConfig = Field(default_factory=PathsConfig)
    validation: ValidationConfig = Field(default_factory=ValidationConfig)
    linking: LinkingConfig = Field(default_factory=LinkingConfig)
    ofx: OFXConfig = Field(default_factory=OFXConfig)
    posting: PostingConfig = Field(default_factory=PostingConfig)
    api: APIConfig = Field(default_factory=APIConfig)

    model_config = {"arbitrary_types_allowed": True}

    def ensure_folders(self) -> None:
        """Create all folders referenced by the configuration."""

        self.paths.ensure_directories()

    @classmethod
    def default(cls, root: Optional[Path] = None) -> "Settings":
        """Settings with every path placed under ``root``."""

        root = Path(root or Path.cwd())
        return cls.model_validate(
            {
                "paths": {
                    "store_file": root / "store.json",
                    "export_folder": root / "exports",
                    "log_folder": root / "logs",
                }
            }
        )

    @classmethod
    def load(cls, path: Path | str = Path("config.yaml")) -> "Settings":
        """Load the configuration from a YAML file."""

        config_path = Path(path).expanduser().resolve()
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with config_path.open("r", encoding="utf-8") as stream:
            data = yaml.safe_load(stream) or {}

        settings = cls.model_validate(data)
        settings.ensure_folders()
        return settings


__all__ = [
    "Settings",
    "PathsConfig",
    "ValidationConfig",
    "LinkingConfig",
    "OFXConfig",
    "PostingConfig",
    "APIConfig",
]
