"""
SQLAlchemy 仓库实现
"""
from typing import Optional, List, Dict, Any, Iterable, Collection
from datetime import datetime
from contextlib import asynccontextmanager
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, AsyncEngine
from sqlalchemy.orm import sessionmaker, aliased
from sqlalchemy import select, update, delete, and_, or_, func

from ..models.flowchart import Element, ElementType, Flowchart, build_elements
from ..models.process import (
    Process, FlowNode, FlowNodeData, SignalListener, ProcessStatus, FlowNodeStatus
)
from ..exceptions import FlowNodeLockedError, FlowNodeNotFoundError
from .repository import (
    Storage, ProcessRepository, FlowNodeRepository, SignalListenerRepository,
    FlowchartRepository, FlowNodeFilter, RootCandidate, UNSET,
    PENDING_TIMER_TYPES, PENDING_ALWAYS_TYPES, STANDBY_TIMER_TYPES, STANDBY_ALWAYS_TYPES
)
from .sqlalchemy_models import (
    BpmnFlowchart as FlowchartDB,
    BpmnProcess as ProcessDB,
    BpmnFlowNode as FlowNodeDB,
    BpmnSignalListener as SignalListenerDB,
    Base
)


class DatabaseManager:
    """数据库管理器"""

    def __init__(self, database_url: str):
        self.database_url = database_url
        self.engine: Optional[AsyncEngine] = None
        self.async_session_maker = None

    async def initialize(self):
        """初始化数据库连接"""
        options: Dict[str, Any] = {"echo": False}
        if not self.database_url.startswith("sqlite"):
            options.update(pool_size=20, max_overflow=10, pool_pre_ping=True)
        self.engine = create_async_engine(self.database_url, **options)

        self.async_session_maker = sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

        # 创建表（开发环境）
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        """关闭数据库连接"""
        if self.engine:
            await self.engine.dispose()

    @asynccontextmanager
    async def get_session(self):
        """获取数据库会话"""
        async with self.async_session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()


def create_sqlalchemy_storage(db_manager: DatabaseManager) -> Storage:
    """基于数据库的仓库集合"""
    return Storage(
        processes=SQLAlchemyProcessRepository(db_manager),
        flow_nodes=SQLAlchemyFlowNodeRepository(db_manager),
        signal_listeners=SQLAlchemySignalListenerRepository(db_manager),
        flowcharts=SQLAlchemyFlowchartRepository(db_manager),
    )


def _enum_values(items: Collection[Any]) -> List[str]:
    return [item.value if hasattr(item, "value") else item for item in items]


def _apply_columns(row: Any, columns: Dict[str, Any], fields: Optional[Iterable[str]]):
    names = list(fields) if fields is not None else list(columns.keys())
    for name in names:
        setattr(row, name, columns[name])


class SQLAlchemyProcessRepository(ProcessRepository):
    """SQLAlchemy 流程仓库实现"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def save(self, process: Process, fields: Optional[Iterable[str]] = None) -> str:
        """保存流程"""
        columns = self._to_columns(process)
        async with self.db.get_session() as session:
            row = await session.get(ProcessDB, process.id)
            if row is None:
                session.add(ProcessDB(**columns))
            else:
                _apply_columns(row, columns, fields)
        return process.id

    async def get(self, process_id: str) -> Optional[Process]:
        """获取流程"""
        async with self.db.get_session() as session:
            row = await session.get(ProcessDB, process_id)
            return self._to_model(row) if row else None

    async def delete(self, process_id: str) -> bool:
        """删除流程"""
        async with self.db.get_session() as session:
            result = await session.execute(delete(ProcessDB).where(ProcessDB.id == process_id))
            return result.rowcount > 0

    async def find_active_by_target(
        self,
        flowchart_id: str,
        target_type: str,
        target_id: str
    ) -> List[Process]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(ProcessDB).where(
                    and_(
                        ProcessDB.flowchart_id == flowchart_id,
                        ProcessDB.target_type == target_type,
                        ProcessDB.target_id == target_id,
                        ProcessDB.status.in_([ProcessStatus.STARTED.value, ProcessStatus.PAUSED.value]),
                        or_(
                            ProcessDB.parent_process_id.is_(None),
                            ProcessDB.parent_process_flow_node_id.is_(None)
                        )
                    )
                )
            )
            return [self._to_model(row) for row in result.scalars()]

    async def find_children(
        self,
        parent_process_id: str,
        parent_process_flow_node_id: Optional[str] = None,
        statuses: Optional[Collection[ProcessStatus]] = None
    ) -> List[Process]:
        conditions = [ProcessDB.parent_process_id == parent_process_id]
        if parent_process_flow_node_id:
            conditions.append(ProcessDB.parent_process_flow_node_id == parent_process_flow_node_id)
        if statuses is not None:
            conditions.append(ProcessDB.status.in_(_enum_values(statuses)))
        async with self.db.get_session() as session:
            result = await session.execute(
                select(ProcessDB).where(*conditions).order_by(ProcessDB.created_at)
            )
            return [self._to_model(row) for row in result.scalars()]

    async def list(
        self,
        offset: int = 0,
        limit: int = 100,
        status: Optional[ProcessStatus] = None
    ) -> List[Process]:
        query = select(ProcessDB)
        if status is not None:
            query = query.where(ProcessDB.status == status.value)
        query = query.order_by(ProcessDB.created_at.desc()).offset(offset).limit(limit)
        async with self.db.get_session() as session:
            result = await session.execute(query)
            return [self._to_model(row) for row in result.scalars()]

    async def unlock_stale(self, before_timestamp: int) -> int:
        async with self.db.get_session() as session:
            result = await session.execute(
                update(ProcessDB)
                .where(and_(ProcessDB.is_locked.is_(True), ProcessDB.visit_timestamp < before_timestamp))
                .values(is_locked=False)
            )
            return result.rowcount

    async def try_lock(self, process_id: str, visit_timestamp: int) -> bool:
        async with self.db.get_session() as session:
            result = await session.execute(
                update(ProcessDB)
                .where(ProcessDB.id == process_id, ProcessDB.is_locked.is_(False))
                .values(is_locked=True, visit_timestamp=visit_timestamp)
            )
            return result.rowcount == 1

    def _to_columns(self, process: Process) -> Dict[str, Any]:
        return {
            "id": process.id,
            "flowchart_id": process.flowchart_id,
            "name": process.name,
            "target_type": process.target_type,
            "target_id": process.target_id,
            "status": process.status.value,
            "flowchart_elements": {k: v.to_dict() for k, v in process.flowchart_elements.items()},
            "variables": process.variables,
            "created_entities_data": process.created_entities_data,
            "start_element_id": process.start_element_id,
            "parent_process_id": process.parent_process_id,
            "parent_process_flow_node_id": process.parent_process_flow_node_id,
            "root_process_id": process.root_process_id,
            "is_locked": process.is_locked,
            "visit_timestamp": process.visit_timestamp,
            "created_at": process.created_at,
            "ended_at": process.ended_at,
        }

    def _to_model(self, row: ProcessDB) -> Process:
        return Process(
            id=row.id,
            flowchart_id=row.flowchart_id,
            name=row.name or "",
            target_type=row.target_type,
            target_id=row.target_id,
            status=ProcessStatus(row.status),
            flowchart_elements={
                k: Element.from_dict(v) for k, v in (row.flowchart_elements or {}).items()
            },
            variables=dict(row.variables or {}),
            created_entities_data=dict(row.created_entities_data or {}),
            start_element_id=row.start_element_id,
            parent_process_id=row.parent_process_id,
            parent_process_flow_node_id=row.parent_process_flow_node_id,
            root_process_id=row.root_process_id,
            is_locked=bool(row.is_locked),
            visit_timestamp=row.visit_timestamp or 0,
            created_at=row.created_at,
            ended_at=row.ended_at,
        )


def _pending_clause(now: datetime):
    """等待触发节点的查询条件"""
    pending = FlowNodeStatus.PENDING.value
    standby = FlowNodeStatus.STANDBY.value
    return and_(
        FlowNodeDB.is_locked.is_(False),
        FlowNodeDB.is_deleted.is_(False),
        or_(
            and_(
                FlowNodeDB.status == pending,
                FlowNodeDB.element_type.in_(_enum_values(PENDING_TIMER_TYPES)),
                FlowNodeDB.proceed_at <= now
            ),
            and_(
                FlowNodeDB.status == pending,
                FlowNodeDB.element_type.in_(_enum_values(PENDING_ALWAYS_TYPES))
            ),
            and_(
                FlowNodeDB.status == standby,
                FlowNodeDB.element_type.in_(_enum_values(STANDBY_TIMER_TYPES)),
                FlowNodeDB.proceed_at <= now
            ),
            and_(
                FlowNodeDB.status == standby,
                FlowNodeDB.element_type.in_(_enum_values(STANDBY_ALWAYS_TYPES))
            ),
        )
    )


class SQLAlchemyFlowNodeRepository(FlowNodeRepository):
    """SQLAlchemy 流程节点仓库实现"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def save(self, flow_node: FlowNode, fields: Optional[Iterable[str]] = None) -> str:
        """保存节点"""
        async with self.db.get_session() as session:
            row = await session.get(FlowNodeDB, flow_node.id)
            if row is None:
                if not flow_node.number:
                    result = await session.execute(select(func.coalesce(func.max(FlowNodeDB.number), 0)))
                    flow_node.number = result.scalar_one() + 1
                session.add(FlowNodeDB(**self._to_columns(flow_node)))
            else:
                _apply_columns(row, self._to_columns(flow_node), fields)
        return flow_node.id

    async def get(self, flow_node_id: str) -> Optional[FlowNode]:
        async with self.db.get_session() as session:
            row = await session.get(FlowNodeDB, flow_node_id)
            return self._to_model(row) if row else None

    async def delete(self, flow_node_id: str) -> bool:
        async with self.db.get_session() as session:
            result = await session.execute(
                update(FlowNodeDB).where(FlowNodeDB.id == flow_node_id).values(is_deleted=True)
            )
            return result.rowcount > 0

    async def find(self, criteria: FlowNodeFilter) -> List[FlowNode]:
        query = select(FlowNodeDB).where(*self._conditions(criteria))
        order = FlowNodeDB.number.desc() if criteria.order_desc else FlowNodeDB.number
        query = query.order_by(order)
        if criteria.limit is not None:
            query = query.limit(criteria.limit)
        async with self.db.get_session() as session:
            result = await session.execute(query)
            return [self._to_model(row) for row in result.scalars()]

    async def count(self, criteria: FlowNodeFilter) -> int:
        query = select(func.count(FlowNodeDB.id)).where(*self._conditions(criteria))
        async with self.db.get_session() as session:
            result = await session.execute(query)
            return result.scalar_one()

    async def find_pending(
        self,
        now: datetime,
        limit: int,
        root_process_id: Optional[str] = None
    ) -> List[FlowNode]:
        query = select(FlowNodeDB).where(_pending_clause(now))
        if root_process_id is not None:
            query = query.join(ProcessDB, ProcessDB.id == FlowNodeDB.process_id).where(
                ProcessDB.root_process_id == root_process_id
            )
        query = query.order_by(FlowNodeDB.number).limit(limit)
        async with self.db.get_session() as session:
            result = await session.execute(query)
            return [self._to_model(row) for row in result.scalars()]

    async def find_pending_roots(self, now: datetime, limit: int) -> List[RootCandidate]:
        process = aliased(ProcessDB)
        root = aliased(ProcessDB)
        query = (
            select(
                root.id,
                func.max(root.visit_timestamp).label("visit_timestamp"),
                func.min(FlowNodeDB.number).label("number")
            )
            .select_from(FlowNodeDB)
            .join(process, process.id == FlowNodeDB.process_id)
            .join(root, root.id == process.root_process_id)
            .where(
                and_(
                    _pending_clause(now),
                    root.is_locked.is_(False),
                    root.status == ProcessStatus.STARTED.value
                )
            )
            .group_by(root.id)
            .order_by("visit_timestamp", "number")
            .limit(limit)
        )
        async with self.db.get_session() as session:
            result = await session.execute(query)
            return [RootCandidate(row[0], row[1] or 0, row[2] or 0) for row in result.all()]

    async def lock(self, flow_node_id: str) -> FlowNode:
        """事务内读取并加锁"""
        async with self.db.get_session() as session:
            result = await session.execute(
                select(FlowNodeDB).where(FlowNodeDB.id == flow_node_id).with_for_update()
            )
            row = result.scalar_one_or_none()
            if row is None or row.is_deleted:
                raise FlowNodeNotFoundError(flow_node_id)
            if row.is_locked:
                raise FlowNodeLockedError(flow_node_id)
            row.is_locked = True
            return self._to_model(row)

    async def unlock(self, flow_node_id: str) -> None:
        async with self.db.get_session() as session:
            await session.execute(
                update(FlowNodeDB).where(FlowNodeDB.id == flow_node_id).values(is_locked=False)
            )

    def _conditions(self, criteria: FlowNodeFilter) -> List[Any]:
        conditions = []
        if not criteria.include_deleted:
            conditions.append(FlowNodeDB.is_deleted.is_(False))
        if criteria.process_id is not None:
            conditions.append(FlowNodeDB.process_id == criteria.process_id)
        if criteria.statuses is not None:
            conditions.append(FlowNodeDB.status.in_(_enum_values(criteria.statuses)))
        if criteria.exclude_statuses is not None:
            conditions.append(FlowNodeDB.status.not_in(_enum_values(criteria.exclude_statuses)))
        if criteria.element_types is not None:
            conditions.append(FlowNodeDB.element_type.in_(_enum_values(criteria.element_types)))
        if criteria.exclude_element_types is not None:
            conditions.append(FlowNodeDB.element_type.not_in(_enum_values(criteria.exclude_element_types)))
        if criteria.element_id is not None:
            conditions.append(FlowNodeDB.element_id == criteria.element_id)
        if criteria.previous_flow_node_id is not None:
            conditions.append(FlowNodeDB.previous_flow_node_id == criteria.previous_flow_node_id)
        if criteria.divergent_flow_node_id is not UNSET:
            if criteria.divergent_flow_node_id is None:
                conditions.append(FlowNodeDB.divergent_flow_node_id.is_(None))
            else:
                conditions.append(FlowNodeDB.divergent_flow_node_id == criteria.divergent_flow_node_id)
        if criteria.max_number is not None:
            conditions.append(FlowNodeDB.number <= criteria.max_number)
        return conditions

    def _to_columns(self, flow_node: FlowNode) -> Dict[str, Any]:
        return {
            "id": flow_node.id,
            "process_id": flow_node.process_id,
            "flowchart_id": flow_node.flowchart_id,
            "target_type": flow_node.target_type,
            "target_id": flow_node.target_id,
            "status": flow_node.status.value,
            "element_id": flow_node.element_id,
            "element_type": flow_node.element_type.value if flow_node.element_type else None,
            "element_data": flow_node.element_data.to_dict() if flow_node.element_data else None,
            "previous_flow_node_id": flow_node.previous_flow_node_id,
            "previous_flow_node_element_type": flow_node.previous_flow_node_element_type,
            "divergent_flow_node_id": flow_node.divergent_flow_node_id,
            "number": flow_node.number,
            "is_locked": flow_node.is_locked,
            "data": flow_node.data.to_dict(),
            "proceed_at": flow_node.proceed_at,
            "deferred_at": flow_node.deferred_at,
            "is_deferred": flow_node.is_deferred,
            "created_at": flow_node.created_at,
            "processed_at": flow_node.processed_at,
            "is_deleted": flow_node.is_deleted,
        }

    def _to_model(self, row: FlowNodeDB) -> FlowNode:
        return FlowNode(
            id=row.id,
            process_id=row.process_id,
            flowchart_id=row.flowchart_id,
            target_type=row.target_type,
            target_id=row.target_id,
            status=FlowNodeStatus(row.status),
            element_id=row.element_id,
            element_type=ElementType(row.element_type) if row.element_type else None,
            element_data=Element.from_dict(row.element_data) if row.element_data else None,
            previous_flow_node_id=row.previous_flow_node_id,
            previous_flow_node_element_type=row.previous_flow_node_element_type,
            divergent_flow_node_id=row.divergent_flow_node_id,
            number=row.number or 0,
            is_locked=bool(row.is_locked),
            data=FlowNodeData.from_dict(row.data),
            proceed_at=row.proceed_at,
            deferred_at=row.deferred_at,
            is_deferred=bool(row.is_deferred),
            created_at=row.created_at,
            processed_at=row.processed_at,
            is_deleted=bool(row.is_deleted),
        )


class SQLAlchemySignalListenerRepository(SignalListenerRepository):
    """SQLAlchemy 信号监听仓库实现"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def save(self, listener: SignalListener) -> str:
        columns = {
            "id": listener.id,
            "signal_name": listener.signal_name,
            "flow_node_id": listener.flow_node_id,
            "process_id": listener.process_id,
            "root_process_id": listener.root_process_id,
            "is_triggered": listener.is_triggered,
            "created_at": listener.created_at,
        }
        async with self.db.get_session() as session:
            row = await session.get(SignalListenerDB, listener.id)
            if row is None:
                session.add(SignalListenerDB(**columns))
            else:
                _apply_columns(row, columns, None)
        return listener.id

    async def get(self, listener_id: str) -> Optional[SignalListener]:
        async with self.db.get_session() as session:
            row = await session.get(SignalListenerDB, listener_id)
            return self._to_model(row) if row else None

    async def delete(self, listener_id: str) -> bool:
        async with self.db.get_session() as session:
            result = await session.execute(delete(SignalListenerDB).where(SignalListenerDB.id == listener_id))
            return result.rowcount > 0

    async def find(
        self,
        signal_name: Optional[str] = None,
        is_triggered: Optional[bool] = None,
        root_process_id: Optional[str] = None,
        flow_node_id: Optional[str] = None
    ) -> List[SignalListener]:
        conditions = []
        if signal_name is not None:
            conditions.append(SignalListenerDB.signal_name == signal_name)
        if is_triggered is not None:
            conditions.append(SignalListenerDB.is_triggered.is_(is_triggered))
        if root_process_id is not None:
            conditions.append(SignalListenerDB.root_process_id == root_process_id)
        if flow_node_id is not None:
            conditions.append(SignalListenerDB.flow_node_id == flow_node_id)
        async with self.db.get_session() as session:
            result = await session.execute(
                select(SignalListenerDB).where(*conditions).order_by(SignalListenerDB.created_at)
            )
            return [self._to_model(row) for row in result.scalars()]

    async def trigger(self, signal_name: str) -> int:
        async with self.db.get_session() as session:
            result = await session.execute(
                update(SignalListenerDB)
                .where(and_(
                    SignalListenerDB.signal_name == signal_name,
                    SignalListenerDB.is_triggered.is_(False)
                ))
                .values(is_triggered=True)
            )
            return result.rowcount

    async def delete_stale(self) -> int:
        waiting = [
            FlowNodeStatus.STANDBY.value,
            FlowNodeStatus.CREATED.value,
            FlowNodeStatus.PENDING.value,
        ]
        async with self.db.get_session() as session:
            result = await session.execute(
                select(SignalListenerDB.id)
                .outerjoin(FlowNodeDB, FlowNodeDB.id == SignalListenerDB.flow_node_id)
                .where(or_(
                    FlowNodeDB.id.is_(None),
                    FlowNodeDB.is_deleted.is_(True),
                    FlowNodeDB.status.not_in(waiting)
                ))
            )
            ids = [row[0] for row in result.all()]
            if ids:
                await session.execute(delete(SignalListenerDB).where(SignalListenerDB.id.in_(ids)))
            return len(ids)

    async def find_triggered_roots(self, limit: int) -> List[RootCandidate]:
        root = aliased(ProcessDB)
        query = (
            select(
                root.id,
                func.max(root.visit_timestamp).label("visit_timestamp"),
                func.min(FlowNodeDB.number).label("number")
            )
            .select_from(SignalListenerDB)
            .join(root, root.id == SignalListenerDB.root_process_id)
            .outerjoin(FlowNodeDB, FlowNodeDB.id == SignalListenerDB.flow_node_id)
            .where(and_(
                SignalListenerDB.is_triggered.is_(True),
                root.is_locked.is_(False),
                root.status == ProcessStatus.STARTED.value
            ))
            .group_by(root.id)
            .order_by("visit_timestamp", "number")
            .limit(limit)
        )
        async with self.db.get_session() as session:
            result = await session.execute(query)
            return [RootCandidate(row[0], row[1] or 0, row[2] or 0) for row in result.all()]

    def _to_model(self, row: SignalListenerDB) -> SignalListener:
        return SignalListener(
            id=row.id,
            signal_name=row.signal_name,
            flow_node_id=row.flow_node_id,
            process_id=row.process_id,
            root_process_id=row.root_process_id,
            is_triggered=bool(row.is_triggered),
            created_at=row.created_at,
        )


class SQLAlchemyFlowchartRepository(FlowchartRepository):
    """SQLAlchemy 流程图仓库实现"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def save(self, flowchart: Flowchart) -> str:
        columns = {
            "id": flowchart.id,
            "name": flowchart.name,
            "target_type": flowchart.target_type,
            "data": flowchart.data_list,
            "is_active": flowchart.is_active,
        }
        async with self.db.get_session() as session:
            row = await session.get(FlowchartDB, flowchart.id)
            if row is None:
                session.add(FlowchartDB(**columns))
            else:
                _apply_columns(row, columns, None)
        return flowchart.id

    async def get(self, flowchart_id: str) -> Optional[Flowchart]:
        async with self.db.get_session() as session:
            row = await session.get(FlowchartDB, flowchart_id)
            return self._to_model(row) if row else None

    async def list(self, offset: int = 0, limit: int = 100) -> List[Flowchart]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(FlowchartDB).order_by(FlowchartDB.created_at).offset(offset).limit(limit)
            )
            return [self._to_model(row) for row in result.scalars()]

    async def delete(self, flowchart_id: str) -> bool:
        async with self.db.get_session() as session:
            result = await session.execute(delete(FlowchartDB).where(FlowchartDB.id == flowchart_id))
            return result.rowcount > 0

    def _to_model(self, row: FlowchartDB) -> Flowchart:
        elements, event_start_ids, _ = build_elements(row.data or [])
        return Flowchart(
            id=row.id,
            name=row.name or "",
            target_type=row.target_type,
            data_list=list(row.data or []),
            elements=elements,
            event_start_ids=event_start_ids,
            is_active=bool(row.is_active),
        )
