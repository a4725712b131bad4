# ============================================================================
# Pydantic Models for Block Configs
# ============================================================================
#
# Configs are stored as JSON on FlowBlock.config_data with snake_case keys.
# The builder UI posts camelCase, so both spellings are accepted.

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class BlockConfig(BaseModel):
    """Base for every block config."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    @field_validator("*", mode="before")
    @classmethod
    def null_as_empty(cls, value, info):
        # Stored configs may hold null where a list or mapping is expected
        if value is None:
            default_factory = cls.model_fields[info.field_name].default_factory
            if default_factory is not None:
                return default_factory()
        return value


class Condition(BlockConfig):
    """Boolean test of one field (or variable) against a value."""

    field: Optional[str] = Field(default=None, description="Field api_name or variable name")
    operator: Optional[str] = Field(default=None, description="Comparison operator, e.g. 'equals'")
    value: Any = Field(default=None, description="Literal or '$variable' reference")


class TriggerConfig(BlockConfig):
    object_api_name: Optional[str] = Field(
        default=None, description="Object type that starts this flow ('pets', 'donations', ...)"
    )
    conditions: List[Condition] = Field(default_factory=list)


class Outcome(BlockConfig):
    label: Optional[str] = None
    conditions: List[Condition] = Field(default_factory=list)


class DecisionConfig(BlockConfig):
    outcomes: List[Outcome] = Field(
        default_factory=list, description="Evaluated in order, first match wins"
    )


class Assignment(BlockConfig):
    variable: str
    value: Any = None


class AssignmentConfig(BlockConfig):
    assignments: List[Assignment] = Field(default_factory=list)


class RecordConfig(BlockConfig):
    """Config shared by create_record, update_record and delete_record."""

    object_api_name: Optional[str] = None
    record_id: Any = None
    field_mappings: Dict[str, Any] = Field(default_factory=dict)


class WaitConfig(BlockConfig):
    wait_time: Any = Field(default=0, description="Seconds to wait")
