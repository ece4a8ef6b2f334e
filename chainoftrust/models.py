"""
Pydantic models for the parts of a task definition the worker reads.
"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class Features(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    chain_of_trust: bool = Field(default=False, alias="chainOfTrust")


class ArtifactDeclaration(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["file", "directory"] = "file"
    path: str
    name: Optional[str] = None
    expires: Optional[str] = None
    content_type: Optional[str] = Field(default=None, alias="contentType")


class TaskPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    command: List[List[str]] = Field(default_factory=list)
    max_run_time: int = Field(default=3600, alias="maxRunTime")
    artifacts: List[ArtifactDeclaration] = Field(default_factory=list)
    features: Features = Field(default_factory=Features)
    env: Dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_task_definition(cls, definition: Dict[str, Any]) -> "TaskPayload":
        return cls.model_validate(definition.get("payload", {}))
