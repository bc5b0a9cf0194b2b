"""
流程图解析器
"""
import yaml
import json
import logging
from typing import Dict, Any, List, Union
from pathlib import Path

from jsonschema import Draft7Validator

from ..models.flowchart import Flowchart, ElementType
from ..exceptions import FlowchartParseError, FlowchartValidationError


logger = logging.getLogger(__name__)


ITEM_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["id", "type"],
    "properties": {
        "id": {"type": "string", "minLength": 1},
        "type": {"type": "string", "enum": [t.value for t in ElementType]},
        "center": {
            "type": "object",
            "properties": {
                "x": {"type": "number"},
                "y": {"type": "number"}
            }
        },
        "flowList": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["id"],
                "properties": {
                    "id": {"type": "string"},
                    "conditionsAll": {"type": "array"},
                    "conditionsAny": {"type": "array"}
                }
            }
        },
        "actionList": {
            "type": "array",
            "items": {"type": "object", "required": ["type"]}
        },
        "dataList": {"type": "array"},
        "attachedToId": {"type": "string"}
    },
    "allOf": [
        {
            "if": {"properties": {"type": {"const": ElementType.FLOW.value}}},
            "then": {
                "required": ["startId", "endId"],
                "properties": {
                    "startId": {"type": "string"},
                    "endId": {"type": "string"}
                }
            }
        }
    ]
}

FLOWCHART_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["list"],
    "properties": {
        "id": {"type": "string"},
        "name": {"type": "string"},
        "targetType": {"type": ["string", "null"]},
        "list": {"type": "array", "items": ITEM_SCHEMA}
    }
}


class FlowchartParser:
    """流程图解析器"""

    def __init__(self):
        self.parsers = {
            'yaml': self._parse_yaml,
            'yml': self._parse_yaml,
            'json': self._parse_json
        }
        self.validator = Draft7Validator(FLOWCHART_SCHEMA)
        self.item_validator = Draft7Validator(ITEM_SCHEMA)

    def parse(self, source: Union[str, Path, Dict[str, Any], List[Dict[str, Any]]]) -> Flowchart:
        """
        解析流程图定义

        Args:
            source: 文件路径、YAML/JSON 字符串、字典或元素列表

        Returns:
            Flowchart: 解析并规范化后的流程图
        """
        if isinstance(source, list):
            return self._parse_dict({"list": source})

        if isinstance(source, dict):
            return self._parse_dict(source)

        if isinstance(source, (str, Path)):
            path = Path(source)
            try:
                is_file = path.exists() and path.is_file()
            except OSError:
                is_file = False
            if is_file:
                return self.parse_file(path)
            return self.parse_string(str(source))

        raise FlowchartParseError(f"Unsupported source type: {type(source)}")

    def parse_file(self, file_path: Path) -> Flowchart:
        """解析流程图文件"""
        file_path = Path(file_path)
        suffix = file_path.suffix.lower().lstrip('.')
        if suffix not in self.parsers:
            raise FlowchartParseError(f"Unsupported file format: {suffix}")

        with open(file_path, 'r', encoding='utf-8') as f:
            content = f.read()

        data = self.parsers[suffix](content)
        return self._parse_dict(data)

    def parse_string(self, content: str) -> Flowchart:
        """解析流程图字符串（YAML 是 JSON 的超集）"""
        data = self._parse_yaml(content)
        if not isinstance(data, (dict, list)):
            raise FlowchartParseError("Failed to parse flowchart string as YAML or JSON")
        return self.parse(data)

    def _parse_yaml(self, content: str) -> Any:
        """解析YAML格式"""
        try:
            return yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise FlowchartParseError(f"Failed to parse YAML: {e}")

    def _parse_json(self, content: str) -> Any:
        """解析JSON格式"""
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise FlowchartParseError(f"Failed to parse JSON: {e}")

    def _parse_dict(self, data: Dict[str, Any]) -> Flowchart:
        """解析字典格式的流程图定义"""
        if not isinstance(data, dict):
            raise FlowchartParseError(f"Flowchart definition must be a mapping, got {type(data).__name__}")
        if 'flowchart' in data:
            data = data['flowchart']

        errors = self.validate(data)
        if errors:
            raise FlowchartValidationError(f"Flowchart validation failed: {errors}")

        flowchart = Flowchart.from_list(
            data['list'],
            flowchart_id=data.get('id'),
            name=data.get('name', ''),
            target_type=data.get('targetType')
        )
        logger.debug(f"Parsed flowchart '{flowchart.id}' with {len(flowchart.elements)} elements")
        return flowchart

    def validate(self, data: Dict[str, Any]) -> List[str]:
        """校验流程图定义，返回错误列表"""
        errors = [
            f"{'/'.join(str(p) for p in error.absolute_path) or '<root>'}: {error.message}"
            for error in self.validator.iter_errors(data)
        ]
        if errors:
            return errors
        return self.validate_items(data['list'])

    def validate_items(self, items: List[Dict[str, Any]], path: str = "list") -> List[str]:
        """校验元素列表的结构（含嵌套 dataList）"""
        errors = []
        ids = set()
        for index, item in enumerate(items):
            for error in self.item_validator.iter_errors(item):
                errors.append(f"{path}/{index}: {error.message}")
            item_id = item.get("id")
            if item_id in ids:
                errors.append(f"{path}/{index}: duplicate element id '{item_id}'")
            ids.add(item_id)

        for index, item in enumerate(items):
            if item.get("type") == ElementType.FLOW.value:
                for key in ("startId", "endId"):
                    if item.get(key) and item[key] not in ids:
                        errors.append(f"{path}/{index}: {key} '{item[key]}' references unknown element")
            if item.get("attachedToId") and item["attachedToId"] not in ids:
                errors.append(f"{path}/{index}: attachedToId '{item['attachedToId']}' references unknown element")
            if isinstance(item.get("dataList"), list):
                errors.extend(self.validate_items(item["dataList"], f"{path}/{index}/dataList"))
        return errors
