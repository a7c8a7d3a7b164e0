"""Control messages exchanged on a paired channel.

Control frames are JSON text; file chunks travel as raw binary frames
between ``file-start`` and ``file-end``.
"""

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError


class _Control(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> str:
        return self.model_dump_json(by_alias=True)


class PairRequest(_Control):
    type: Literal["pair-request"] = "pair-request"
    sender: str = Field(alias="from")
    claims_trusted: bool = Field(default=False, alias="claimsTrusted")


class PairAccept(_Control):
    type: Literal["pair-accept"] = "pair-accept"
    sender: str = Field(alias="from")


class PairReject(_Control):
    type: Literal["pair-reject"] = "pair-reject"


class FileStart(_Control):
    type: Literal["file-start"] = "file-start"
    file_id: str = Field(alias="fileId")
    name: str
    size: int = Field(ge=0)
    mime_type: str = Field(alias="mimeType")
    chunk_count: int = Field(alias="chunkCount", ge=0)


class FileEnd(_Control):
    type: Literal["file-end"] = "file-end"
    file_id: str = Field(alias="fileId")


class FileAbort(_Control):
    """Sender gave up on a file after ``file-start``."""
    type: Literal["file-abort"] = "file-abort"
    file_id: str = Field(alias="fileId")


ControlMessage = Annotated[
    Union[PairRequest, PairAccept, PairReject, FileStart, FileEnd, FileAbort],
    Field(discriminator="type"),
]

_adapter = TypeAdapter(ControlMessage)


def parse_control(text: str) -> Optional[BaseModel]:
    """Decode a control frame, or None if it is not one we understand."""
    try:
        return _adapter.validate_json(text)
    except ValidationError:
        return None
