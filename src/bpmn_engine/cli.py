"""
BPMN Process Engine CLI
"""
import click
import asyncio
import logging
import yaml
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Dict, Any, Tuple

from .config import EngineConfig
from .core import ProcessManager, ParallelCoordinator, FlowchartParser
from .models.process import Process, Target, FlowNodeStatus
from .storage.repository import FlowNodeFilter, Storage
from .integrations import AsyncioJobScheduler
from .exceptions import BpmnEngineError


def _parse_assignments(values: Tuple[str, ...]) -> Dict[str, Any]:
    """解析 key=value 形式的参数，值按 YAML 标量解析"""
    result = {}
    for item in values:
        if "=" not in item:
            raise click.BadParameter(f"Expected key=value, got '{item}'")
        key, raw = item.split("=", 1)
        result[key.strip()] = yaml.safe_load(raw) if raw else None
    return result


def _setup_logging(config: EngineConfig):
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


@click.group()
@click.option('--config', 'config_file', type=click.Path(), default=None, help='YAML config file')
@click.pass_context
def cli(ctx, config_file):
    """BPMN Process Engine CLI"""
    config = EngineConfig.from_file(config_file) if config_file else EngineConfig.from_env()
    _setup_logging(config)
    ctx.obj = config


@cli.command()
@click.option('--host', default=None, help='Host to bind to')
@click.option('--port', default=None, type=int, help='Port to bind to')
@click.option('--reload', is_flag=True, help='Enable auto-reload')
@click.pass_obj
def serve(config, host, port, reload):
    """Start the API server"""
    import uvicorn

    host = host or config.api_host
    port = port or config.api_port
    click.echo(f"Starting API server on {host}:{port}")
    uvicorn.run(
        "bpmn_engine.api:app",
        host=host,
        port=port,
        reload=reload,
        log_level=config.log_level.lower()
    )


@cli.command()
@click.argument('flowchart_file', type=click.Path(exists=True))
def validate(flowchart_file):
    """Validate a flowchart file"""
    parser = FlowchartParser()
    try:
        flowchart = parser.parse_file(flowchart_file)
    except BpmnEngineError as e:
        click.echo(f"Invalid flowchart: {e}", err=True)
        raise SystemExit(1)

    click.echo(f"Flowchart '{flowchart.id}' is valid ({len(flowchart.elements)} elements)")
    if flowchart.event_start_ids:
        click.echo(f"Start events: {', '.join(flowchart.event_start_ids)}")


@cli.command()
@click.argument('flowchart_file', type=click.Path(exists=True))
@click.option('--target-type', default=None, help='Target entity type (defaults to flowchart targetType)')
@click.option('--target-id', default='cli-target', help='Target entity id')
@click.option('--attr', 'attributes', multiple=True, help='Target attribute as key=value')
@click.option('--var', 'variables', multiple=True, help='Process variable as key=value')
@click.option('--start-element', default=None, help='Explicit start element id')
@click.option('--advance', default=0, type=float, help='Advance the clock by N hours and process pending flows')
@click.pass_obj
def run(config, flowchart_file, target_type, target_id, attributes, variables, start_element, advance):
    """Run a flowchart in memory and print its flow nodes"""
    async def _run():
        parser = FlowchartParser()
        flowchart = parser.parse_file(flowchart_file)

        offset = {"value": timedelta()}

        def clock() -> datetime:
            return datetime.utcnow() + offset["value"]

        manager = ProcessManager(config=config, clock=clock)
        await manager.storage.flowcharts.save(flowchart)

        target = Target(
            type=target_type or flowchart.target_type or "Target",
            id=target_id,
            attributes=_parse_assignments(attributes)
        )
        manager.target_resolver.add(target)

        process = Process(
            flowchart_id=flowchart.id,
            name=flowchart.name,
            variables=_parse_assignments(variables),
            created_at=manager.now()
        )
        process = await manager.start_process(
            target, flowchart, start_element_id=start_element, created_process=process
        )

        if advance:
            offset["value"] = timedelta(hours=advance)
            proceeded = await manager.scanner.process_pending_flows(process.id)
            click.echo(f"Advanced clock by {advance}h, proceeded {proceeded} pending flow nodes")

        process = await manager.get_process(process.id)
        click.echo(f"Process {process.id}: {process.status.value}")

        flow_nodes = await manager.storage.flow_nodes.find(FlowNodeFilter(process_id=process.id))
        for flow_node in flow_nodes:
            marker = "*" if flow_node.status in (FlowNodeStatus.PENDING, FlowNodeStatus.IN_PROCESS) else " "
            click.echo(
                f"{marker} #{flow_node.number:<4} {flow_node.element_id:<24} "
                f"{flow_node.element_type.value:<40} {flow_node.status.value}"
            )

        if process.variables:
            click.echo(f"Variables: {process.variables}")

    try:
        asyncio.run(_run())
    except BpmnEngineError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)


@asynccontextmanager
async def _open_manager(config: EngineConfig):
    """按配置打开存储并创建流程管理器"""
    from .storage.sqlalchemy_repository import DatabaseManager, create_sqlalchemy_storage

    db_manager = None
    if config.database_url == "memory":
        storage = Storage.in_memory()
    else:
        db_manager = DatabaseManager(config.database_url)
        await db_manager.initialize()
        storage = create_sqlalchemy_storage(db_manager)

    try:
        yield ProcessManager(storage=storage, config=config)
    finally:
        if db_manager:
            await db_manager.close()


@cli.command('process-parallel')
@click.option('--timeout', default=None, type=float, help='Seconds to wait for scheduled jobs')
@click.pass_obj
def process_parallel(config, timeout):
    """Lock root processes with pending work and process them in parallel"""
    async def _run():
        async with _open_manager(config) as manager:
            job_scheduler = AsyncioJobScheduler(config.max_concurrent_jobs)
            coordinator = ParallelCoordinator(manager, job_scheduler)
            scheduled = await coordinator.process_parallel()
            await job_scheduler.wait_all(timeout)
            await job_scheduler.shutdown()
            return scheduled

    try:
        scheduled = asyncio.run(_run())
    except BpmnEngineError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)

    click.echo(f"Scheduled {len(scheduled)} root processes")
    for process_id in scheduled:
        click.echo(f"  {process_id}")


@cli.command('process-pending')
@click.option('--root-process-id', default=None, help='Restrict the scan to one process tree')
@click.pass_obj
def process_pending(config, root_process_id):
    """Resume pending flow nodes that are due"""
    async def _run():
        async with _open_manager(config) as manager:
            return await manager.scanner.process_pending_flows(root_process_id)

    try:
        proceeded = asyncio.run(_run())
    except BpmnEngineError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)

    click.echo(f"Proceeded {proceeded} pending flow nodes")


@cli.command('init-db')
@click.pass_obj
def init_db(config):
    """Create database tables"""
    async def _init():
        from .storage.sqlalchemy_repository import DatabaseManager

        db_manager = DatabaseManager(config.database_url)
        await db_manager.initialize()
        await db_manager.close()

    asyncio.run(_init())
    click.echo(f"Database initialized: {config.database_url}")


def main():
    """Main entry point"""
    cli()


if __name__ == '__main__':
    main()
