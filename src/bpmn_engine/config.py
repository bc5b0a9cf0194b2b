"""
引擎配置
"""
import os
import logging
from dataclasses import dataclass, fields
from datetime import timedelta
from typing import Optional, Dict, Any

import yaml
from dotenv import load_dotenv


logger = logging.getLogger(__name__)


_ENV_PREFIX = "BPMN_"

_DURATION_FIELDS = {
    "pending_defer_period",
    "pending_defer_interval_period",
    "process_unlock_period",
}


@dataclass
class EngineConfig:
    """引擎可调参数"""
    # 单次扫描的待处理节点上限
    pending_batch_size: int = 20000
    # 单次并行调度的根流程上限
    parallel_batch_size: int = 100
    # 条件检查退避：初始宽限窗口
    pending_defer_period: timedelta = timedelta(hours=6)
    # 条件检查退避：重检间隔
    pending_defer_interval_period: timedelta = timedelta(minutes=10)
    # 根流程锁超时
    process_unlock_period: timedelta = timedelta(hours=3)
    max_concurrent_jobs: int = 10
    database_url: str = "sqlite+aiosqlite:///./bpmn_engine.db"
    log_level: str = "INFO"
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EngineConfig":
        """从字典创建，时长字段以秒为单位"""
        values = {}
        for f in fields(cls):
            if f.name not in data or data[f.name] is None:
                continue
            values[f.name] = _coerce(f.name, data[f.name], f.default)
        return cls(**values)

    @classmethod
    def from_env(cls, base: Optional["EngineConfig"] = None) -> "EngineConfig":
        """从环境变量读取配置（BPMN_ 前缀）"""
        load_dotenv()
        config = base or cls()
        for f in fields(cls):
            raw = os.getenv(_ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            setattr(config, f.name, _coerce(f.name, raw, f.default))

        # 兼容通用的数据库环境变量
        if not os.getenv(_ENV_PREFIX + "DATABASE_URL") and os.getenv("DATABASE_URL"):
            config.database_url = os.getenv("DATABASE_URL")
        return config

    @classmethod
    def from_file(cls, path: str) -> "EngineConfig":
        """从 YAML 文件读取配置，环境变量优先"""
        data: Dict[str, Any] = {}
        if os.path.exists(path):
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            if "engine" in data:
                data = data["engine"]
        else:
            logger.warning(f"Config file '{path}' not found, using defaults")
        return cls.from_env(cls.from_dict(data))


def _coerce(name: str, value: Any, default: Any) -> Any:
    if name in _DURATION_FIELDS:
        if isinstance(value, timedelta):
            return value
        return timedelta(seconds=float(value))
    if isinstance(default, bool):
        if isinstance(value, str):
            return value.lower() in ("1", "true", "yes")
        return bool(value)
    if isinstance(default, int):
        return int(value)
    return value
