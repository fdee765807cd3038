from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from croniter import croniter
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from pipebricks.core.utils import ensure_utc, new_id, utcnow


class DataSourceConfig(BaseModel):
    """Connection settings for one side of a pipeline.

    The same shape is used for the source and the destination role; ``type``
    is the connector token resolved through the connector registry.
    """

    model_config = ConfigDict(populate_by_name=True)

    type: str
    connection_string: str = ""
    parameters: Dict[str, str] = Field(default_factory=dict)
    schema_text: Optional[str] = Field(default=None, alias="schema")
    name: Optional[str] = None

    @field_validator("type")
    @classmethod
    def _type_not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("connector type must not be blank")
        return v.strip()

    @field_validator("parameters", mode="before")
    @classmethod
    def _stringify_parameters(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return {str(k): ("" if val is None else str(val)) for k, val in v.items()}
        return v

    @property
    def schema_fields(self) -> List[str]:
        """Comma separated schema text as a list of field names."""
        if not self.schema_text:
            return []
        return [f.strip() for f in self.schema_text.split(",") if f.strip()]

    @property
    def connection_profile_id(self) -> Optional[str]:
        return self.parameters.get("connectionProfileId") or None


class FieldMap(BaseModel):
    source_field: str
    destination_field: str
    automap_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    is_automapped: bool = False
    metadata: Dict[str, str] = Field(default_factory=dict)


class Pipeline(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    created_at: datetime = Field(default_factory=utcnow)

    source: DataSourceConfig
    destination: DataSourceConfig
    field_mappings: List[FieldMap] = Field(default_factory=list)
    transformations: List[str] = Field(default_factory=list)
    metadata: Dict[str, str] = Field(default_factory=dict)

    # --- scheduling ---
    schedule_enabled: bool = False
    cron_expression: Optional[str] = None
    next_run_at: Optional[datetime] = None

    # --- batching ---
    batch_size: Optional[int] = None
    batch_delay_seconds: Optional[float] = None

    # --- incremental loads ---
    incremental_field: Optional[str] = None
    last_incremental_value: Optional[str] = None

    @field_validator("created_at", "next_run_at")
    @classmethod
    def _utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    @model_validator(mode="after")
    def _validate_pipeline(self) -> "Pipeline":
        if self.schedule_enabled:
            if not self.cron_expression or not croniter.is_valid(self.cron_expression):
                raise ValueError(
                    f"schedule_enabled requires a valid cron_expression, got {self.cron_expression!r}"
                )
        if self.batch_size is not None and self.batch_size <= 0:
            raise ValueError("batch_size must be positive when set")
        if self.batch_delay_seconds is not None and self.batch_delay_seconds < 0:
            raise ValueError("batch_delay_seconds must be >= 0 when set")

        seen = set()
        for m in self.field_mappings:
            if m.destination_field in seen:
                raise ValueError(f"duplicate destination field in field_mappings: {m.destination_field!r}")
            seen.add(m.destination_field)
        return self

    def snapshot(self) -> Dict[str, Any]:
        """The execution-relevant configuration, as stored on a failed run log."""
        return self.model_dump(
            mode="json",
            by_alias=True,
            include={
                "id",
                "name",
                "source",
                "destination",
                "field_mappings",
                "transformations",
                "metadata",
                "schedule_enabled",
                "cron_expression",
                "batch_size",
                "batch_delay_seconds",
                "incremental_field",
                "last_incremental_value",
            },
        )
