"""Tagged results of recovering structured data from model output"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field


class RecoveryOk(BaseModel):
    """A faithfully parsed value"""

    kind: Literal["ok"] = "ok"
    value: Any
    strategy: str  # markers, balanced, key or sanitized-<candidate>


class RecoveryTruncated(BaseModel):
    """The reply was cut off mid-structure; retry with a larger output budget"""

    kind: Literal["truncated"] = "truncated"
    reason: str = "response appears to be truncated"


class RecoveryMalformed(BaseModel):
    """The reply holds no recoverable structure; regenerate from scratch"""

    kind: Literal["malformed"] = "malformed"
    reason: str


RecoveredValue = Annotated[
    Union[RecoveryOk, RecoveryTruncated, RecoveryMalformed],
    Field(discriminator="kind"),
]
