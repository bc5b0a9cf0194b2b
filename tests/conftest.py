"""
Pytest 配置和公共 fixtures
"""
import pytest
from datetime import datetime, timedelta
from typing import AsyncGenerator, Dict, Any, List, Optional

from bpmn_engine.config import EngineConfig
from bpmn_engine.core import ProcessManager, FlowchartParser
from bpmn_engine.models.flowchart import Flowchart
from bpmn_engine.models.process import Process, FlowNode, Target
from bpmn_engine.storage.repository import Storage, FlowNodeFilter
from bpmn_engine.storage.sqlalchemy_repository import DatabaseManager


class FakeClock:
    """可手动推进的时钟"""

    def __init__(self, start: Optional[datetime] = None):
        self.current = start or datetime(2024, 1, 15, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


class FlowchartBuilder:
    """按元素与连线构建流程图定义"""

    def __init__(self):
        self.items: List[Dict[str, Any]] = []
        self._flow_count = 0

    def element(self, element_id: str, element_type: str, **params) -> "FlowchartBuilder":
        self.items.append({"id": element_id, "type": element_type, **params})
        return self

    def flow(self, start_id: str, end_id: str, flow_id: Optional[str] = None, **params) -> str:
        self._flow_count += 1
        flow_id = flow_id or f"flow{self._flow_count}"
        self.items.append({"id": flow_id, "type": "flow", "startId": start_id, "endId": end_id, **params})
        return flow_id

    def chain(self, *element_ids: str) -> "FlowchartBuilder":
        for start_id, end_id in zip(element_ids, element_ids[1:]):
            self.flow(start_id, end_id)
        return self

    def build(self, flowchart_id: str = "flowchart-1", target_type: str = "Lead") -> Flowchart:
        return FlowchartParser().parse({
            "id": flowchart_id,
            "name": flowchart_id,
            "targetType": target_type,
            "list": self.items
        })


class EngineHarness:
    """测试用的引擎封装"""

    def __init__(self, manager: ProcessManager, target: Target, clock: FakeClock):
        self.manager = manager
        self.target = target
        self.clock = clock

    async def start(self, flowchart: Flowchart, **kwargs) -> Process:
        await self.manager.storage.flowcharts.save(flowchart)
        return await self.manager.start_process(self.target, flowchart, **kwargs)

    async def process(self, process_id: str) -> Process:
        return await self.manager.get_process(process_id)

    async def nodes(self, process_id: str, element_id: Optional[str] = None) -> List[FlowNode]:
        return await self.manager.storage.flow_nodes.find(
            FlowNodeFilter(process_id=process_id, element_id=element_id)
        )

    async def node(self, process_id: str, element_id: str) -> FlowNode:
        """元素最近一次的节点"""
        nodes = await self.nodes(process_id, element_id)
        assert nodes, f"no flow node for element '{element_id}'"
        return nodes[-1]

    async def statuses(self, process_id: str) -> Dict[str, str]:
        """元素ID到最近一次节点状态的映射"""
        return {n.element_id: n.status.value for n in await self.nodes(process_id)}

    async def children(self, process_id: str) -> List[Process]:
        return await self.manager.storage.processes.find_children(process_id)

    async def scan(self) -> int:
        return await self.manager.scanner.process_pending_flows()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config() -> EngineConfig:
    return EngineConfig()


@pytest.fixture
def storage() -> Storage:
    return Storage.in_memory()


@pytest.fixture
def manager(storage, config, clock) -> ProcessManager:
    """使用内存存储的流程管理器"""
    return ProcessManager(storage=storage, config=config, clock=clock)


@pytest.fixture
def target(manager) -> Target:
    """已注册的业务对象"""
    return manager.target_resolver.add(Target(
        type="Lead",
        id="lead-1",
        attributes={"status": "New", "amount": 100}
    ))


@pytest.fixture
def engine(manager, target, clock) -> EngineHarness:
    return EngineHarness(manager, target, clock)


@pytest.fixture
def builder() -> FlowchartBuilder:
    return FlowchartBuilder()


@pytest.fixture
def builder_factory():
    """用于构建子流程 dataList 的额外构建器"""
    return FlowchartBuilder


@pytest.fixture
async def test_database() -> AsyncGenerator[DatabaseManager, None]:
    """创建测试数据库"""
    # 使用 SQLite 内存数据库进行测试
    db_manager = DatabaseManager("sqlite+aiosqlite:///:memory:")
    await db_manager.initialize()

    yield db_manager

    await db_manager.close()
