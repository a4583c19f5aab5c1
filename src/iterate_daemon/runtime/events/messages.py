"""Typed message union exchanged over the real-time channel."""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")


class Rect(BaseModel):
    x: float = 0
    y: float = 0
    width: float = 0
    height: float = 0


class AnnotationDeletePayload(_Payload):
    id: str


class BatchSubmitPayload(_Payload):
    iteration: str
    annotations: list[dict[str, Any]] = Field(default_factory=list)
    dom_changes: list[dict[str, Any]] = Field(default_factory=list, alias="domChanges")


class DomSelectPayload(_Payload):
    iteration: str
    selector: str


class DomRectChangePayload(_Payload):
    iteration: str
    selector: str
    from_: Rect = Field(alias="from")
    to: Rect


class DomReorderPayload(_Payload):
    iteration: str
    selector: str
    new_index: int = Field(alias="newIndex")


class DomStylePayload(_Payload):
    iteration: str
    selector: str
    before: dict[str, str] = Field(default_factory=dict)
    after: dict[str, str] = Field(default_factory=dict)


class IterationSwitchPayload(_Payload):
    iteration: str


class IterationComparePayload(_Payload):
    iterations: tuple[str, str]


class AnnotationCreateMessage(BaseModel):
    type: Literal["annotation:create"]
    payload: dict[str, Any]


class AnnotationDeleteMessage(BaseModel):
    type: Literal["annotation:delete"]
    payload: AnnotationDeletePayload


class BatchSubmitMessage(BaseModel):
    type: Literal["batch:submit"]
    payload: BatchSubmitPayload


class DomSelectMessage(BaseModel):
    type: Literal["dom:select"]
    payload: DomSelectPayload


class DomMoveMessage(BaseModel):
    type: Literal["dom:move"]
    payload: DomRectChangePayload


class DomReorderMessage(BaseModel):
    type: Literal["dom:reorder"]
    payload: DomReorderPayload


class DomResizeMessage(BaseModel):
    type: Literal["dom:resize"]
    payload: DomRectChangePayload


class DomStyleMessage(BaseModel):
    type: Literal["dom:style"]
    payload: DomStylePayload


class IterationSwitchMessage(BaseModel):
    type: Literal["iteration:switch"]
    payload: IterationSwitchPayload


class IterationCompareMessage(BaseModel):
    type: Literal["iteration:compare"]
    payload: IterationComparePayload


ClientMessage = Annotated[
    Union[
        AnnotationCreateMessage,
        AnnotationDeleteMessage,
        BatchSubmitMessage,
        DomSelectMessage,
        DomMoveMessage,
        DomReorderMessage,
        DomResizeMessage,
        DomStyleMessage,
        IterationSwitchMessage,
        IterationCompareMessage,
    ],
    Field(discriminator="type"),
]

client_message_adapter: TypeAdapter[Any] = TypeAdapter(ClientMessage)

ServerMessageType = Literal[
    "state:sync",
    "iteration:created",
    "iteration:removed",
    "iteration:status",
    "annotation:created",
    "annotation:updated",
    "annotation:deleted",
    "batch:submitted",
    "dom:changed",
    "command:started",
    "error",
]


def parse_client_message(raw: str) -> Any:
    """Validate one inbound JSON frame into its message model.

    Raises:
        pydantic.ValidationError: On malformed JSON, unknown ``type`` or bad payload.
    """
    return client_message_adapter.validate_json(raw)


def server_message(message_type: ServerMessageType, payload: Any) -> dict[str, Any]:
    return {"type": message_type, "payload": payload}
