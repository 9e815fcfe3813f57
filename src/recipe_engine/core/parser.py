"""
配方定义解析器
"""
import yaml
import json
from typing import Dict, Any, List, Union
from pathlib import Path

from jsonschema import Draft7Validator

from ..models.recipe import Recipe, StepType, ErrorPolicy
from ..exceptions import RecipeParseError, ValidationError


RECIPE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["name"],
    "properties": {
        "id": {"type": "string"},
        "name": {"type": "string", "minLength": 1},
        "scope_id": {"type": ["string", "null"]},
        "description": {"type": ["string", "null"]},
        "steps": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["id", "type"],
                "properties": {
                    "id": {"type": "string", "minLength": 1},
                    "type": {"enum": [t.value for t in StepType]},
                    "name": {"type": "string"},
                    "config": {"type": "object"},
                    "next_step_id": {"type": ["string", "null"]},
                    "on_error": {"enum": [p.value for p in ErrorPolicy]},
                    "branches": {
                        "type": "object",
                        "additionalProperties": {"type": "string"},
                    },
                    "retry_policy": {
                        "type": ["object", "null"],
                        "properties": {
                            "max_retries": {"type": "integer", "minimum": 0},
                            "retry_delay": {"type": "number", "minimum": 0},
                            "backoff_factor": {"type": "number", "minimum": 1},
                            "max_delay": {"type": "number", "minimum": 0},
                            "jitter": {"type": "boolean"},
                        },
                    },
                },
            },
        },
    },
}


class RecipeParser:
    """配方解析器，支持 YAML / JSON 文件、字符串和字典"""

    def __init__(self):
        self.parsers = {
            'yaml': self._parse_yaml,
            'yml': self._parse_yaml,
            'json': self._parse_json
        }
        self.validator = Draft7Validator(RECIPE_SCHEMA)

    def parse(self, source: Union[str, Path, Dict[str, Any]]) -> Recipe:
        """
        解析配方定义

        Args:
            source: 配方定义来源，可以是文件路径、字符串或字典

        Returns:
            Recipe: 解析后的配方对象
        """
        if isinstance(source, dict):
            return self.parse_dict(source)

        if isinstance(source, Path) or self._is_file(source):
            return self.parse_file(Path(source))

        if isinstance(source, str):
            return self.parse_string(source)

        raise RecipeParseError(f"Unsupported source type: {type(source)}")

    @staticmethod
    def _is_file(source: Any) -> bool:
        if not isinstance(source, str) or "\n" in source:
            return False
        try:
            return Path(source).is_file()
        except (OSError, ValueError):
            return False

    def parse_file(self, file_path: Path) -> Recipe:
        """解析配方文件"""
        suffix = file_path.suffix.lower().lstrip('.')
        if suffix not in self.parsers:
            raise RecipeParseError(f"Unsupported file format: {suffix}")

        with open(file_path, 'r', encoding='utf-8') as f:
            content = f.read()

        return self.parse_dict(self.parsers[suffix](content))

    def parse_string(self, content: str) -> Recipe:
        """解析配方字符串（JSON 是 YAML 的子集）"""
        return self.parse_dict(self._parse_yaml(content))

    def _parse_yaml(self, content: str) -> Dict[str, Any]:
        try:
            return yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise RecipeParseError(f"Failed to parse YAML: {e}")

    def _parse_json(self, content: str) -> Dict[str, Any]:
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise RecipeParseError(f"Failed to parse JSON: {e}")

    def schema_errors(self, data: Any) -> List[str]:
        """返回结构校验错误列表"""
        errors = []
        for error in sorted(self.validator.iter_errors(data), key=lambda e: [str(p) for p in e.path]):
            location = ".".join(str(p) for p in error.path) or "<root>"
            errors.append(f"{location}: {error.message}")
        return errors

    def parse_dict(self, data: Dict[str, Any]) -> Recipe:
        """解析字典格式的配方定义"""
        if not isinstance(data, dict):
            raise RecipeParseError("Recipe definition must be a mapping")
        if 'recipe' in data:
            data = data['recipe']

        errors = self.schema_errors(data)
        if errors:
            raise RecipeParseError("Invalid recipe definition: " + "; ".join(errors))

        recipe = Recipe.from_dict(data)
        errors = recipe.validate()
        if errors:
            raise ValidationError("; ".join(errors))
        return recipe
