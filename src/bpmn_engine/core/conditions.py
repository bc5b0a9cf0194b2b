"""
条件评估器
"""
import logging
from typing import Dict, Any, List, Optional, Callable

from ..models.process import Target


logger = logging.getLogger(__name__)


_MISSING = object()


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def _compare(left: Any, right: Any, op: Callable[[Any, Any], bool]) -> bool:
    if left is None or right is None:
        return False
    try:
        return op(left, right)
    except TypeError:
        try:
            return op(float(left), float(right))
        except (TypeError, ValueError):
            return False


def _contains(container: Any, item: Any) -> bool:
    if container is None:
        return False
    try:
        return item in container
    except TypeError:
        return False


class ConditionEvaluator:
    """
    条件评估器

    条件项格式为 ``{attribute, comparison, value}``。``attribute`` 以 ``$`` 开头时
    读取流程变量，否则读取目标对象属性；``value`` 同样支持 ``$`` 引用变量。
    """

    def __init__(self):
        self.comparisons: Dict[str, Callable[[Any, Any], bool]] = {
            "equals": lambda a, b: a == b,
            "notEquals": lambda a, b: a != b,
            "greaterThan": lambda a, b: _compare(a, b, lambda x, y: x > y),
            "lessThan": lambda a, b: _compare(a, b, lambda x, y: x < y),
            "greaterThanOrEquals": lambda a, b: _compare(a, b, lambda x, y: x >= y),
            "lessThanOrEquals": lambda a, b: _compare(a, b, lambda x, y: x <= y),
            "isEmpty": lambda a, b: _is_empty(a),
            "isNotEmpty": lambda a, b: not _is_empty(a),
            "isTrue": lambda a, b: a is True,
            "isFalse": lambda a, b: not a,
            "in": lambda a, b: _contains(b, a),
            "notIn": lambda a, b: not _contains(b, a),
            "contains": lambda a, b: _contains(a, b),
        }

    def register_comparison(self, name: str, comparison: Callable[[Any, Any], bool]):
        """注册自定义比较"""
        self.comparisons[name] = comparison

    def check(
        self,
        target: Optional[Target],
        conditions_all: Optional[List[Dict[str, Any]]] = None,
        conditions_any: Optional[List[Dict[str, Any]]] = None,
        variables: Optional[Dict[str, Any]] = None
    ) -> bool:
        """全部条件（AND）与任一条件（OR）同时满足时返回 True"""
        variables = variables or {}
        result = True

        if conditions_all is not None:
            result = result and all(
                self.check_item(target, item, variables) for item in conditions_all
            )

        if conditions_any is not None and conditions_any:
            result = result and any(
                self.check_item(target, item, variables) for item in conditions_any
            )

        return result

    def check_item(self, target: Optional[Target], item: Dict[str, Any], variables: Dict[str, Any]) -> bool:
        comparison = item.get("comparison")
        attribute = item.get("attribute")
        if not comparison or not attribute:
            logger.warning(f"Skipping malformed condition item {item}")
            return False

        handler = self.comparisons.get(comparison)
        if not handler:
            logger.warning(f"Unknown comparison '{comparison}'")
            return False

        left = self._resolve(attribute, target, variables)
        right = item.get("value")
        if isinstance(right, str) and right.startswith("$"):
            right = self._resolve(right, target, variables)

        return bool(handler(left, right))

    def _resolve(self, name: str, target: Optional[Target], variables: Dict[str, Any]) -> Any:
        if name.startswith("$"):
            return self._lookup(variables, name[1:])
        if target is None:
            return None
        return self._lookup(target.attributes, name)

    def _lookup(self, data: Dict[str, Any], path: str) -> Any:
        """支持点号访问嵌套字典"""
        value: Any = data
        for part in path.split("."):
            if not isinstance(value, dict):
                return None
            value = value.get(part, _MISSING)
            if value is _MISSING:
                return None
        return value
