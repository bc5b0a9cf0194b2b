"""
配置与事件总线测试
"""
import pytest
from datetime import timedelta

from bpmn_engine.config import EngineConfig
from bpmn_engine.integrations.event_bus import EventBus, record_update_topic


@pytest.fixture
def clean_env(monkeypatch):
    """清除可能影响配置的环境变量"""
    for name in (
        "BPMN_DATABASE_URL", "DATABASE_URL", "BPMN_API_PORT",
        "BPMN_PENDING_BATCH_SIZE", "BPMN_PROCESS_UNLOCK_PERIOD", "BPMN_LOG_LEVEL"
    ):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestEngineConfig:
    """引擎配置测试类"""

    def test_defaults(self):
        config = EngineConfig()

        assert config.pending_batch_size == 20000
        assert config.parallel_batch_size == 100
        assert config.pending_defer_period == timedelta(hours=6)
        assert config.pending_defer_interval_period == timedelta(minutes=10)
        assert config.process_unlock_period == timedelta(hours=3)

    def test_from_dict(self):
        """测试时长字段按秒解析"""
        config = EngineConfig.from_dict({
            "pending_defer_period": 60,
            "parallel_batch_size": "5",
            "log_level": "DEBUG",
            "api_port": None,
            "unknown": 1,
        })

        assert config.pending_defer_period == timedelta(seconds=60)
        assert config.parallel_batch_size == 5
        assert config.log_level == "DEBUG"
        assert config.api_port == 8000

    def test_from_env(self, clean_env):
        clean_env.setenv("BPMN_PENDING_BATCH_SIZE", "50")
        clean_env.setenv("BPMN_PROCESS_UNLOCK_PERIOD", "120")
        clean_env.setenv("DATABASE_URL", "postgresql+asyncpg://localhost/bpmn")

        config = EngineConfig.from_env()

        assert config.pending_batch_size == 50
        assert config.process_unlock_period == timedelta(seconds=120)
        assert config.database_url == "postgresql+asyncpg://localhost/bpmn"

    def test_prefixed_database_url_wins(self, clean_env):
        clean_env.setenv("BPMN_DATABASE_URL", "memory")
        clean_env.setenv("DATABASE_URL", "postgresql+asyncpg://localhost/bpmn")

        assert EngineConfig.from_env().database_url == "memory"

    def test_from_file(self, clean_env, tmp_path):
        """测试 YAML 配置文件，环境变量优先"""
        path = tmp_path / "engine.yaml"
        path.write_text(
            "engine:\n"
            "  parallel_batch_size: 10\n"
            "  pending_defer_interval_period: 30\n"
            "  api_port: 8080\n",
            encoding="utf-8"
        )
        clean_env.setenv("BPMN_API_PORT", "9000")

        config = EngineConfig.from_file(str(path))

        assert config.parallel_batch_size == 10
        assert config.pending_defer_interval_period == timedelta(seconds=30)
        assert config.api_port == 9000

    def test_missing_file_uses_defaults(self, clean_env, tmp_path):
        config = EngineConfig.from_file(str(tmp_path / "missing.yaml"))

        assert config == EngineConfig()


class TestEventBus:
    """事件总线测试类"""

    @pytest.mark.asyncio
    async def test_wildcard_subscription(self):
        bus = EventBus()
        received = []

        async def handler(event):
            received.append(event.topic)

        await bus.subscribe("recordUpdate.BpmnProcess.*", handler)
        await bus.publish(record_update_topic("BpmnProcess", "p1"), {})
        await bus.publish("recordUpdate.BpmnFlowNode.p1", {})

        assert received == ["recordUpdate.BpmnProcess.p1"]

    @pytest.mark.asyncio
    async def test_failing_subscriber_is_isolated(self):
        """测试订阅者异常不影响其他订阅者"""
        bus = EventBus()
        received = []

        def broken(event):
            raise RuntimeError("boom")

        await bus.subscribe("topic", broken)
        await bus.subscribe("topic", lambda event: received.append(event.payload))
        await bus.publish("topic", {"id": 1})

        assert received == [{"id": 1}]

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = EventBus()
        received = []
        handler = received.append

        await bus.subscribe("topic", handler)
        await bus.unsubscribe("topic", handler)
        await bus.publish("topic", {})

        assert received == []
        assert bus.subscribers == {}

    @pytest.mark.asyncio
    async def test_manager_publishes_record_updates(self, engine, builder, manager):
        """测试保存流程与节点时发布记录更新事件"""
        payloads = []
        await manager.event_bus.subscribe("recordUpdate.BpmnProcess.*", lambda event: payloads.append(event.payload))
        builder.element("start", "eventStart")
        builder.element("end", "eventEnd")
        builder.chain("start", "end")

        process = await engine.start(builder.build())

        assert {p["entityType"] for p in payloads} == {"BpmnProcess", "BpmnFlowNode"}
        assert payloads[-1] == {"entityType": "BpmnProcess", "id": process.id, "status": "Ended"}
