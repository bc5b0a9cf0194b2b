"""
任务动作与脚本注册表
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, Callable, TYPE_CHECKING

from ..models.process import Target, Process
from ..exceptions import ProcessError, StructuralError

if TYPE_CHECKING:
    from ..integrations.collaborators import TargetResolver


logger = logging.getLogger(__name__)


@dataclass
class ActionContext:
    """动作执行上下文"""
    target: Target
    process: Process
    element_id: str
    variables: Dict[str, Any] = field(default_factory=dict)
    created_entities_data: Dict[str, Any] = field(default_factory=dict)
    target_resolver: Optional["TargetResolver"] = None
    created_entities_data_changed: bool = False


async def _maybe_await(result: Any) -> Any:
    if asyncio.iscoroutine(result):
        return await result
    return result


def _resolve_value(value: Any, variables: Dict[str, Any]) -> Any:
    if isinstance(value, str) and value.startswith("$"):
        return variables.get(value[1:])
    return value


async def set_variable(action: Dict[str, Any], context: ActionContext):
    name = action.get("name")
    if not name:
        raise StructuralError(f"Action setVariable in element '{context.element_id}' has no name")
    if name.startswith("$"):
        name = name[1:]
    context.variables[name] = _resolve_value(action.get("value"), context.variables)


async def update_target(action: Dict[str, Any], context: ActionContext):
    attributes = {
        key: _resolve_value(value, context.variables)
        for key, value in (action.get("attributes") or {}).items()
    }
    if not attributes:
        return
    if context.target_resolver is not None:
        await context.target_resolver.update_entity(context.target, attributes)
    context.target.attributes.update(attributes)


async def raise_error(action: Dict[str, Any], context: ActionContext):
    raise ProcessError(
        code=action.get("code"),
        message=action.get("message") or ""
    )


class ActionRegistry:
    """动作执行器"""

    def __init__(self):
        self.action_handlers: Dict[str, Callable] = {}
        self.scripts: Dict[str, Callable] = {}
        self._register_builtin_actions()

    def _register_builtin_actions(self):
        self.register("setVariable", set_variable)
        self.register("updateTarget", update_target)
        self.register("raiseError", raise_error)

    def register(self, action_type: str, handler: Callable):
        """注册动作处理器"""
        self.action_handlers[action_type] = handler

    def register_script(self, name: str, script: Callable):
        """注册脚本任务实现"""
        self.scripts[name] = script

    async def execute_action(self, action: Dict[str, Any], context: ActionContext) -> Any:
        """执行动作"""
        action_type = action.get("type")
        if not action_type:
            raise StructuralError("Action must have a type")

        handler = self.action_handlers.get(action_type)
        if not handler:
            raise StructuralError(f"No handler for action type: {action_type}")

        logger.debug(f"Executing action '{action_type}' in element '{context.element_id}'")
        return await _maybe_await(handler(action, context))

    async def run_script(self, name: str, variables: Dict[str, Any], target: Target) -> Dict[str, Any]:
        """
        执行脚本

        脚本接收变量副本与目标对象，可以原地修改变量，也可以返回新的变量字典。
        """
        script = self.scripts.get(name)
        if not script:
            raise StructuralError(f"Script '{name}' is not registered")

        result = await _maybe_await(script(variables, target))
        if isinstance(result, dict):
            return result
        return variables
