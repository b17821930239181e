from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from pushrelay.core.errors import JobPayloadError


class JobKind(str, Enum):
    NOTIFICATION = "notification"
    BULK = "bulk"
    RETRY = "retry"


class DeliveryTarget(BaseModel):
    model_config = ConfigDict(frozen=True)

    # token addresses one device; topic addresses every subscriber of a topic.
    kind: Literal["token", "topic"]
    value: str = Field(min_length=1)


class NotificationTask(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["notification"] = "notification"
    notification_id: str
    target: DeliveryTarget


class BulkTask(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["bulk"] = "bulk"
    notification_ids: list[str] = Field(min_length=1)


class RetryTask(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["retry"] = "retry"
    notification_id: str
    target: DeliveryTarget
    retry_of_id: str


JobTask = Annotated[Union[NotificationTask, BulkTask, RetryTask], Field(discriminator="kind")]

_task_adapter: TypeAdapter[JobTask] = TypeAdapter(JobTask)


def parse_task(payload: Any) -> NotificationTask | BulkTask | RetryTask:
    # Reject unknown kinds and malformed payloads at the boundary so handlers only see typed tasks.
    try:
        return _task_adapter.validate_python(payload)
    except ValidationError as exc:
        raise JobPayloadError(f"invalid job payload: {exc.errors()[0].get('msg', 'unknown error')}") from exc


def task_kind(task: NotificationTask | BulkTask | RetryTask) -> JobKind:
    return JobKind(task.kind)


def task_notification_ids(task: NotificationTask | BulkTask | RetryTask) -> list[str]:
    # Bulk tasks reference several notifications; the others reference exactly one.
    if isinstance(task, BulkTask):
        return list(task.notification_ids)
    return [task.notification_id]
