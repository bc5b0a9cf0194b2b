"""External integrations"""

from .event_bus import EventBus, Event, record_update_topic
from .job_scheduler import JobScheduler, InMemoryJobScheduler, AsyncioJobScheduler, ScheduledJob
from .collaborators import (
    TargetResolver,
    InMemoryTargetResolver,
    UserTaskService,
    InMemoryUserTaskService,
    UserTask,
    MessageBroker,
    InMemoryMessageBroker,
    Message
)

__all__ = [
    "EventBus",
    "Event",
    "record_update_topic",
    "JobScheduler",
    "InMemoryJobScheduler",
    "AsyncioJobScheduler",
    "ScheduledJob",
    "TargetResolver",
    "InMemoryTargetResolver",
    "UserTaskService",
    "InMemoryUserTaskService",
    "UserTask",
    "MessageBroker",
    "InMemoryMessageBroker",
    "Message"
]
