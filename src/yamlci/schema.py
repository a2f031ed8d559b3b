# schema.py
"""pydantic models for the raw workflow document, before it becomes a Workflow."""
from __future__ import annotations

from typing import Annotated, Any, Dict, List, Optional, Union

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator, model_validator


def _scalar(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        raise ValueError("expected a scalar value")
    return str(value)


def _str_map(value: Any) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError("expected a mapping")
    return {str(k): _scalar(v) for k, v in value.items()}


def _str_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (str, int, float)):
        return [str(value)]
    return [str(v) for v in value]


def _opt_scalar(value: Any) -> Any:
    return _scalar(value) if isinstance(value, (bool, int, float)) else value


StrMap = Annotated[Dict[str, str], BeforeValidator(_str_map)]
StrList = Annotated[List[str], BeforeValidator(_str_list)]
OptStr = Annotated[Optional[str], BeforeValidator(_opt_scalar)]


class RunDefaultsSchema(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    shell: Optional[str] = None
    working_directory: Optional[str] = Field(None, alias="working-directory")


class DefaultsSchema(BaseModel):
    model_config = ConfigDict(extra="forbid")

    run: RunDefaultsSchema = Field(default_factory=RunDefaultsSchema)


class StepSchema(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    id: Optional[str] = None
    name: Optional[str] = None
    if_: OptStr = Field(None, alias="if")
    run: OptStr = None
    shell: Optional[str] = None
    env: StrMap = Field(default_factory=dict)
    working_directory: Optional[str] = Field(None, alias="working-directory")
    continue_on_error: Union[bool, str] = Field(False, alias="continue-on-error")
    timeout_minutes: Optional[float] = Field(None, alias="timeout-minutes", gt=0)
    uses: Optional[str] = None
    with_: StrMap = Field(default_factory=dict, alias="with")

    @model_validator(mode="after")
    def _run_or_uses(self) -> "StepSchema":
        if (self.run is None) == (self.uses is None):
            raise ValueError("a step needs exactly one of 'run' or 'uses'")
        if self.uses is not None and self.shell is not None:
            raise ValueError("'shell' is only valid on 'run' steps")
        return self


class StrategySchema(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    matrix: Dict[str, Any] = Field(default_factory=dict)
    fail_fast: bool = Field(True, alias="fail-fast")
    max_parallel: Optional[int] = Field(None, alias="max-parallel", gt=0)

    @field_validator("matrix")
    @classmethod
    def _matrix_shape(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        for key, entry in value.items():
            if key in ("include", "exclude"):
                if not isinstance(entry, list) or not all(isinstance(e, dict) for e in entry):
                    raise ValueError(f"matrix.{key} must be a list of mappings")
            elif not isinstance(entry, list) or not entry:
                raise ValueError(f"matrix.{key} must be a non-empty list")
        return value


class JobSchema(BaseModel):
    # unsupported job keys (permissions, services, ...) are kept and reported
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    name: Optional[str] = None
    runs_on: StrList = Field(default_factory=lambda: ["self-hosted"], alias="runs-on")
    needs: StrList = Field(default_factory=list)
    if_: OptStr = Field(None, alias="if")
    env: StrMap = Field(default_factory=dict)
    defaults: DefaultsSchema = Field(default_factory=DefaultsSchema)
    strategy: Optional[StrategySchema] = None
    outputs: StrMap = Field(default_factory=dict)
    continue_on_error: Union[bool, str] = Field(False, alias="continue-on-error")
    timeout_minutes: Optional[float] = Field(None, alias="timeout-minutes", gt=0)
    steps: List[StepSchema] = Field(min_length=1)


class WorkflowSchema(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: Optional[str] = None
    run_name: Optional[str] = Field(None, alias="run-name")
    on: Union[str, List[str], Dict[str, Any]] = Field(default_factory=list)
    env: StrMap = Field(default_factory=dict)
    defaults: DefaultsSchema = Field(default_factory=DefaultsSchema)
    jobs: Dict[str, JobSchema] = Field(min_length=1)


def format_loc(loc: tuple) -> str:
    """('jobs', 'build', 'steps', 1, 'shell') -> 'jobs.build.steps[1].shell'"""
    out = ""
    for part in loc:
        if isinstance(part, int):
            out += f"[{part}]"
        else:
            out += ("." if out else "") + str(part)
    return out or "<root>"
