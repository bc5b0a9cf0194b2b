"""
SQLAlchemy 数据库模型定义
"""
from sqlalchemy import (
    Column, String, Text, Boolean, BigInteger, DateTime, JSON, Index, CheckConstraint
)
from sqlalchemy.orm import declarative_base
from datetime import datetime
import uuid


Base = declarative_base()


def generate_uuid():
    return str(uuid.uuid4())


class BpmnFlowchart(Base):
    """流程图模型"""
    __tablename__ = 'bpmn_flowcharts'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String(255), nullable=False, default="")
    target_type = Column(String(100))
    data = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, default=True)
    description = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)


class BpmnProcess(Base):
    """流程实例模型"""
    __tablename__ = 'bpmn_processes'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    flowchart_id = Column(String(36))
    name = Column(String(255), default="")
    target_type = Column(String(100))
    target_id = Column(String(36))
    status = Column(String(20), nullable=False)
    flowchart_elements = Column(JSON, default=dict)
    variables = Column(JSON, default=dict)
    created_entities_data = Column(JSON, default=dict)
    start_element_id = Column(String(100))
    parent_process_id = Column(String(36))
    parent_process_flow_node_id = Column(String(36))
    root_process_id = Column(String(36))
    is_locked = Column(Boolean, default=False, nullable=False)
    visit_timestamp = Column(BigInteger, default=0, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    ended_at = Column(DateTime)

    __table_args__ = (
        CheckConstraint(
            "status IN ('Created', 'Started', 'Paused', 'Ended', 'Interrupted', 'Stopped')",
            name='check_process_status'
        ),
        Index('idx_bpmn_processes_target', 'flowchart_id', 'target_type', 'target_id'),
        Index('idx_bpmn_processes_parent', 'parent_process_id'),
        Index('idx_bpmn_processes_root', 'root_process_id'),
        Index('idx_bpmn_processes_lock', 'is_locked', 'visit_timestamp'),
    )


class BpmnFlowNode(Base):
    """流程节点模型"""
    __tablename__ = 'bpmn_flow_nodes'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    process_id = Column(String(36), nullable=False)
    flowchart_id = Column(String(36))
    target_type = Column(String(100))
    target_id = Column(String(36))
    status = Column(String(20), nullable=False)
    element_id = Column(String(100))
    element_type = Column(String(100))
    element_data = Column(JSON)
    previous_flow_node_id = Column(String(36))
    previous_flow_node_element_type = Column(String(100))
    divergent_flow_node_id = Column(String(36))
    number = Column(BigInteger, nullable=False, default=0)
    is_locked = Column(Boolean, default=False, nullable=False)
    data = Column(JSON, default=dict)
    proceed_at = Column(DateTime)
    deferred_at = Column(DateTime)
    is_deferred = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    processed_at = Column(DateTime)
    is_deleted = Column(Boolean, default=False, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('Created', 'InProcess', 'Pending', 'Standby', "
            "'Processed', 'Rejected', 'Failed', 'Interrupted')",
            name='check_flow_node_status'
        ),
        Index('idx_bpmn_flow_nodes_process', 'process_id'),
        Index('idx_bpmn_flow_nodes_pending', 'status', 'element_type', 'is_locked'),
        Index('idx_bpmn_flow_nodes_number', 'number'),
        Index('idx_bpmn_flow_nodes_divergent', 'element_id', 'process_id', 'divergent_flow_node_id'),
    )


class BpmnSignalListener(Base):
    """信号监听模型"""
    __tablename__ = 'bpmn_signal_listeners'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    signal_name = Column(String(255), nullable=False)
    flow_node_id = Column(String(36))
    process_id = Column(String(36))
    root_process_id = Column(String(36))
    is_triggered = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index('idx_bpmn_signal_listeners_name', 'signal_name', 'is_triggered'),
        Index('idx_bpmn_signal_listeners_root', 'root_process_id'),
    )
