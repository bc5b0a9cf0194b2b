"""
外部协作者接口：业务对象解析、用户任务、消息
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Any, Optional, List, Tuple
from uuid import uuid4

from ..models.process import Target, Process, FlowNode


logger = logging.getLogger(__name__)


class TargetResolver(ABC):
    """业务对象解析接口"""

    @abstractmethod
    async def get_entity(self, target_type: str, target_id: str) -> Optional[Target]:
        """按类型与ID加载业务对象"""
        pass

    @abstractmethod
    async def update_entity(self, target: Target, attributes: Dict[str, Any]) -> None:
        """更新业务对象属性"""
        pass


class InMemoryTargetResolver(TargetResolver):
    """内存业务对象存储"""

    def __init__(self):
        self.entities: Dict[Tuple[str, str], Target] = {}

    def add(self, target: Target) -> Target:
        self.entities[(target.type, target.id)] = target
        return target

    async def get_entity(self, target_type: str, target_id: str) -> Optional[Target]:
        return self.entities.get((target_type, target_id))

    async def update_entity(self, target: Target, attributes: Dict[str, Any]) -> None:
        stored = self.entities.get((target.type, target.id))
        if stored is None:
            stored = self.add(Target(type=target.type, id=target.id, attributes=dict(target.attributes)))
        stored.attributes.update(attributes)


class UserTaskService(ABC):
    """用户任务服务接口"""

    @abstractmethod
    async def create_user_task(
        self,
        process: Process,
        flow_node: FlowNode,
        params: Dict[str, Any]
    ) -> str:
        """创建用户任务，返回任务ID"""
        pass

    @abstractmethod
    async def cancel_user_task(self, user_task_id: str) -> None:
        """取消用户任务"""
        pass


@dataclass
class UserTask:
    """用户任务"""
    id: str = field(default_factory=lambda: str(uuid4()))
    process_id: Optional[str] = None
    flow_node_id: Optional[str] = None
    name: str = ""
    params: Dict[str, Any] = field(default_factory=dict)
    is_canceled: bool = False
    created_at: datetime = field(default_factory=datetime.utcnow)


class InMemoryUserTaskService(UserTaskService):
    """内存用户任务服务"""

    def __init__(self):
        self.tasks: Dict[str, UserTask] = {}

    async def create_user_task(
        self,
        process: Process,
        flow_node: FlowNode,
        params: Dict[str, Any]
    ) -> str:
        task = UserTask(
            process_id=process.id,
            flow_node_id=flow_node.id,
            name=params.get("name") or flow_node.element_id,
            params=dict(params)
        )
        self.tasks[task.id] = task
        logger.info(f"Created user task {task.id} for flow node {flow_node.id}")
        return task.id

    async def cancel_user_task(self, user_task_id: str) -> None:
        task = self.tasks.get(user_task_id)
        if not task:
            logger.warning(f"User task {user_task_id} not found")
            return
        task.is_canceled = True
        logger.info(f"Canceled user task {user_task_id}")


@dataclass
class Message:
    """消息"""
    name: str
    target_type: Optional[str] = None
    target_id: Optional[str] = None
    body: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid4()))
    created_at: datetime = field(default_factory=datetime.utcnow)


class MessageBroker(ABC):
    """消息服务接口"""

    @abstractmethod
    async def send(self, process: Process, flow_node: FlowNode, params: Dict[str, Any]) -> str:
        """发送消息，返回消息ID"""
        pass

    @abstractmethod
    async def find_messages(
        self,
        target: Target,
        since: datetime,
        params: Dict[str, Any]
    ) -> List[Message]:
        """查找目标对象在 since 之后收到的消息"""
        pass


class InMemoryMessageBroker(MessageBroker):
    """内存消息服务"""

    def __init__(self):
        self.sent: List[Message] = []
        self.inbox: List[Message] = []

    def receive(self, message: Message) -> Message:
        """投递一条入站消息"""
        self.inbox.append(message)
        return message

    async def send(self, process: Process, flow_node: FlowNode, params: Dict[str, Any]) -> str:
        message = Message(
            name=params.get("messageName") or flow_node.element_id,
            target_type=process.target_type,
            target_id=process.target_id,
            body=dict(params.get("body") or {})
        )
        self.sent.append(message)
        logger.info(f"Sent message '{message.name}' from flow node {flow_node.id}")
        return message.id

    async def find_messages(
        self,
        target: Target,
        since: datetime,
        params: Dict[str, Any]
    ) -> List[Message]:
        name = params.get("messageName")
        return [
            m for m in self.inbox
            if m.target_type == target.type
            and m.target_id == target.id
            and m.created_at >= since
            and (not name or m.name == name)
        ]
