"""
元素实现注册表
"""
import logging
from typing import Dict, Optional, Type, TYPE_CHECKING

from ..models.flowchart import ElementType
from ..models.process import Target, FlowNode, Process
from ..exceptions import UnknownElementTypeError

if TYPE_CHECKING:
    from ..core.manager import ProcessManager
    from .base import BaseElement


logger = logging.getLogger(__name__)


class ElementRegistry:
    """
    元素类型到实现类的映射

    内置实现在 ``elements`` 包导入时通过 ``register_builtin`` 注册，
    每个注册表实例复制一份，可再用 ``register`` 添加或覆盖插件类型。
    """

    _builtin: Dict[ElementType, Type["BaseElement"]] = {}

    def __init__(self, implementations: Optional[Dict[ElementType, Type["BaseElement"]]] = None):
        self.implementations: Dict[ElementType, Type["BaseElement"]] = dict(self._builtin)
        if implementations:
            self.implementations.update(implementations)

    @classmethod
    def default(cls) -> "ElementRegistry":
        return cls()

    @classmethod
    def register_builtin(cls, element_type: ElementType, implementation: Type["BaseElement"]):
        cls._builtin[element_type] = implementation

    def register(self, element_type: ElementType, implementation: Type["BaseElement"]):
        """注册元素实现"""
        self.implementations[ElementType(element_type)] = implementation
        logger.debug(f"Registered implementation {implementation.__name__} for '{element_type}'")

    def get_implementation(self, element_type: ElementType) -> Type["BaseElement"]:
        implementation = self.implementations.get(element_type)
        if implementation is None:
            value = element_type.value if isinstance(element_type, ElementType) else str(element_type)
            raise UnknownElementTypeError(value)
        return implementation

    def create(
        self,
        manager: "ProcessManager",
        target: Target,
        flow_node: FlowNode,
        process: Process
    ) -> "BaseElement":
        implementation = self.get_implementation(flow_node.element_type)
        return implementation(manager, target, flow_node, process)
