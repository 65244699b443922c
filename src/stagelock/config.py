from __future__ import annotations

import json
from decimal import Decimal, InvalidOperation
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from stagelock.observability import METRICS_EXPORTERS


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    state_db_path: str = Field(default="stagelock_state.db", alias="STATE_DB_PATH")

    lease_timeout_seconds: float = Field(default=30.0, alias="LEASE_TIMEOUT_SECONDS")
    duplicate_window_seconds: float = Field(default=30.0, alias="DUPLICATE_WINDOW_SECONDS")
    size_epsilon: Decimal = Field(default=Decimal("0.0001"), alias="SIZE_EPSILON")
    test_symbol_markers: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["_TEST", "test", "TEST"],
        alias="TEST_SYMBOL_MARKERS",
    )

    consistency_check_interval_minutes: float = Field(
        default=15.0, alias="CONSISTENCY_CHECK_INTERVAL_MINUTES"
    )
    partial_exit_monitor_enabled: bool = Field(default=True, alias="PARTIAL_EXIT_MONITOR_ENABLED")
    partial_exit_check_interval_seconds: float = Field(
        default=10.0, alias="PARTIAL_EXIT_CHECK_INTERVAL_SECONDS"
    )
    partial_exit_stage_multiples: Annotated[list[Decimal], NoDecode] = Field(
        default_factory=lambda: [Decimal("1"), Decimal("2")],
        alias="PARTIAL_EXIT_STAGE_MULTIPLES",
    )

    remote_call_timeout_seconds: float = Field(default=10.0, alias="REMOTE_CALL_TIMEOUT_SECONDS")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    observability_enabled: bool = Field(default=False, alias="OBSERVABILITY_ENABLED")
    observability_metrics_exporter: str = Field(
        default="none", alias="OBSERVABILITY_METRICS_EXPORTER"
    )
    observability_otlp_endpoint: str | None = Field(
        default=None, alias="OBSERVABILITY_OTLP_ENDPOINT"
    )
    observability_prometheus_port: int = Field(default=9464, alias="OBSERVABILITY_PROMETHEUS_PORT")

    @field_validator("test_symbol_markers", mode="before")
    def parse_markers(cls, value: str | list[str]) -> list[str]:
        items = cls._split_list(value, invalid_json_message="TEST_SYMBOL_MARKERS JSON value must be a list")
        markers: list[str] = []
        for item in items:
            cleaned = str(item).strip()
            if cleaned and cleaned not in markers:
                markers.append(cleaned)
        return markers

    @field_validator("partial_exit_stage_multiples", mode="before")
    def parse_stage_multiples(cls, value: str | list[object]) -> list[Decimal]:
        items = cls._split_list(
            value, invalid_json_message="PARTIAL_EXIT_STAGE_MULTIPLES JSON value must be a list"
        )
        try:
            multiples = [Decimal(str(item).strip()) for item in items if str(item).strip()]
        except InvalidOperation as exc:
            raise ValueError("PARTIAL_EXIT_STAGE_MULTIPLES values must be numbers") from exc
        if not multiples:
            raise ValueError("PARTIAL_EXIT_STAGE_MULTIPLES must contain at least one stage")
        if any(multiple <= 0 for multiple in multiples):
            raise ValueError("PARTIAL_EXIT_STAGE_MULTIPLES values must be > 0")
        if multiples != sorted(multiples):
            raise ValueError("PARTIAL_EXIT_STAGE_MULTIPLES must be ascending")
        return multiples

    @classmethod
    def _split_list(cls, value: str | list[object], *, invalid_json_message: str) -> list[object]:
        if not isinstance(value, str):
            return list(value)
        raw = value.strip()
        if not raw:
            return []
        if raw.startswith("["):
            parsed = json.loads(raw)
            if not isinstance(parsed, list):
                raise ValueError(invalid_json_message)
            return parsed
        return raw.split(",")

    @field_validator("lease_timeout_seconds")
    def validate_lease_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("LEASE_TIMEOUT_SECONDS must be > 0")
        return value

    @field_validator("duplicate_window_seconds")
    def validate_duplicate_window(cls, value: float) -> float:
        if value < 0:
            raise ValueError("DUPLICATE_WINDOW_SECONDS must be >= 0")
        return value

    @field_validator("size_epsilon")
    def validate_size_epsilon(cls, value: Decimal) -> Decimal:
        if value < 0:
            raise ValueError("SIZE_EPSILON must be >= 0")
        return value

    @field_validator("consistency_check_interval_minutes", "partial_exit_check_interval_seconds")
    def validate_intervals(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("check intervals must be > 0")
        return value

    @field_validator("remote_call_timeout_seconds")
    def validate_remote_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("REMOTE_CALL_TIMEOUT_SECONDS must be > 0")
        return value

    @field_validator("observability_metrics_exporter")
    def validate_metrics_exporter(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in METRICS_EXPORTERS:
            raise ValueError("OBSERVABILITY_METRICS_EXPORTER must be one of none, otlp, prometheus")
        return normalized

    @property
    def consistency_check_interval_seconds(self) -> float:
        return self.consistency_check_interval_minutes * 60
