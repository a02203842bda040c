"""OpenObserveFunction resource: a VRL transform with optional test cases."""
from __future__ import annotations

from typing import Any, Dict, List

from pydantic import Field

from .base import ResourceModel, ResourceSpec


class FunctionTestCase(ResourceModel):
    """One input record and the output the transform must produce for it."""

    input: Any
    expected_output: Any = Field(..., alias="expectedOutput")


class FunctionSpec(ResourceSpec):
    transform_expr: str = Field(..., alias="transformExpr")
    trans_type: int = Field(default=0, alias="transType")
    test_cases: List[FunctionTestCase] = Field(default_factory=list, alias="testCases")

    def to_payload(self, name: str) -> Dict[str, Any]:
        return {
            "name": name,
            "function": self.transform_expr,
            "params": "row",
            "transType": self.trans_type,
        }
