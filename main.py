"""
BPMN Process Engine API 主入口
"""
import logging
import uvicorn
from dotenv import load_dotenv

load_dotenv()

from bpmn_engine.config import EngineConfig


if __name__ == "__main__":
    config = EngineConfig.from_env()
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    uvicorn.run(
        "bpmn_engine.api:app",
        host=config.api_host,
        port=config.api_port,
        log_level=config.log_level.lower()
    )
