"""
Validation of configuration values.

Category rules are plain data: ``category -> key -> rule``. A rule may
declare a ``type`` (number, integer, string, boolean), numeric bounds
(``gt``, ``ge``, ``lt``, ``le``), allowed ``choices`` and the ``message``
reported when the value does not satisfy it. New categories are added
through the ``CONFIG_VALIDATION_RULES`` setting or ``register_rules()``
without touching the write path.

A rule applies to the value stored under its key, and to the members of
an object value, so both ``search_config.max_results = 10`` and
``vector_db_config.index = {"dimension": 768, ...}`` are checked.
"""

from typing import Any, Dict, List, NamedTuple, Optional

import jsonschema
from django.conf import settings

Rule = Dict[str, Any]
RuleSet = Dict[str, Dict[str, Rule]]

DEFAULT_RULES: RuleSet = {
    "vector_db_config": {
        "dimension": {"type": "number", "gt": 0, "message": "Vector dimension must be a positive number"},
        "similarity_metric": {
            "choices": ["cosine", "euclidean", "dot_product"],
            "message": "Invalid similarity metric",
        },
        "index_type": {"choices": ["hnsw", "ivf"], "message": "Invalid index type"},
    },
    "model_params": {
        "temperature": {"type": "number", "ge": 0, "le": 2, "message": "Temperature must be between 0 and 2"},
        "max_tokens": {"type": "number", "gt": 0, "message": "Max tokens must be a positive number"},
        "top_p": {"type": "number", "ge": 0, "le": 1, "message": "Top-p must be between 0 and 1"},
    },
    "search_config": {
        "max_results": {"type": "number", "ge": 1, "le": 100, "message": "Max results must be between 1 and 100"},
        "similarity_threshold": {
            "type": "number",
            "ge": 0,
            "le": 1,
            "message": "Similarity threshold must be between 0 and 1",
        },
    },
    "data_processing": {
        "chunk_size": {"type": "number", "gt": 0, "message": "Chunk size must be a positive number"},
        "chunk_overlap": {"type": "number", "ge": 0, "message": "Chunk overlap must be non-negative"},
    },
    "ui_settings": {
        "theme": {"choices": ["light", "dark"], "message": "Theme must be either light or dark"},
        "language": {"type": "string", "message": "Language must be a string"},
        "show_confidence_scores": {
            "type": "boolean",
            "message": "show_confidence_scores must be a boolean",
        },
    },
    "sentiment_analysis": {
        "threshold_positive": {
            "type": "number",
            "ge": -1,
            "le": 1,
            "message": "Positive threshold must be between -1 and 1",
        },
        "threshold_negative": {
            "type": "number",
            "ge": -1,
            "le": 1,
            "message": "Negative threshold must be between -1 and 1",
        },
    },
    "conversation_config": {
        "max_context_length": {"type": "number", "gt": 0, "message": "Max context length must be positive"},
        "session_timeout": {"type": "number", "gt": 0, "message": "Session timeout must be positive"},
    },
    "auto_response_settings": {
        "confidence_threshold": {
            "type": "number",
            "ge": 0,
            "le": 1,
            "message": "Confidence threshold must be between 0 and 1",
        },
        "max_auto_responses": {"type": "number", "ge": 0, "message": "Max auto responses must be non-negative"},
    },
}

# Warning rules fire when the value *matches* the bounds.
DEFAULT_WARNINGS: RuleSet = {
    "search_config": {
        "max_results": {"gt": 50, "message": "High max results may impact search performance"},
    },
    "data_processing": {
        "chunk_size": {"gt": 2000, "message": "Large chunk size may impact processing performance"},
    },
    "conversation_config": {
        "max_context_length": {"gt": 20, "message": "Large context length may impact response time"},
    },
}

_BOUNDS = ("gt", "ge", "lt", "le")

_registered_rules: RuleSet = {}
_registered_warnings: RuleSet = {}


class ValidationResult(NamedTuple):
    errors: List[str]
    warnings: List[str]

    @property
    def is_valid(self) -> bool:
        return not self.errors


def register_rules(category: str, rules: Dict[str, Rule], warnings: Optional[Dict[str, Rule]] = None) -> None:
    """Add or replace rules for a category at runtime."""
    _registered_rules.setdefault(category, {}).update(rules)
    if warnings:
        _registered_warnings.setdefault(category, {}).update(warnings)


def _merge(*rule_sets: RuleSet) -> RuleSet:
    merged: RuleSet = {}
    for rule_set in rule_sets:
        for category, rules in rule_set.items():
            merged.setdefault(category, {}).update(rules)
    return merged


def get_rules() -> RuleSet:
    configured = getattr(settings, "CONFIG_VALIDATION_RULES", {})
    return _merge(DEFAULT_RULES, configured.get("errors", {}), _registered_rules)


def get_warning_rules() -> RuleSet:
    configured = getattr(settings, "CONFIG_VALIDATION_RULES", {})
    return _merge(DEFAULT_WARNINGS, configured.get("warnings", {}), _registered_warnings)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _has_type(value: Any, expected: str) -> bool:
    if expected == "number":
        return _is_number(value)
    if expected == "integer":
        return isinstance(value, int) and not isinstance(value, bool)
    if expected == "string":
        return isinstance(value, str)
    if expected == "boolean":
        return isinstance(value, bool)
    raise ValueError(f"Unknown rule type: {expected}")


def _matches(rule: Rule, value: Any) -> bool:
    expected = rule.get("type")
    if expected and not _has_type(value, expected):
        return False
    if "choices" in rule and value not in rule["choices"]:
        return False
    bounds = [name for name in _BOUNDS if name in rule]
    if bounds:
        if not _is_number(value):
            return False
        if "gt" in rule and not value > rule["gt"]:
            return False
        if "ge" in rule and not value >= rule["ge"]:
            return False
        if "lt" in rule and not value < rule["lt"]:
            return False
        if "le" in rule and not value <= rule["le"]:
            return False
    return True


def _applicable(rules: Dict[str, Rule], key: str, value: Any):
    """Yield (rule, value) pairs that apply to ``key``/``value``."""
    if key in rules:
        yield rules[key], value
    elif isinstance(value, dict):
        for member_key, member_value in value.items():
            if member_key in rules and member_value is not None:
                yield rules[member_key], member_value


def _schema_errors(schema: Dict[str, Any], value: Any) -> List[str]:
    try:
        validator_cls = jsonschema.validators.validator_for(schema)
        validator_cls.check_schema(schema)
    except jsonschema.SchemaError as exc:
        return [f"Schema validation error: {exc.message}"]

    errors = []
    for error in sorted(validator_cls(schema).iter_errors(value), key=lambda e: list(e.absolute_path)):
        path = "/".join(str(part) for part in error.absolute_path) or "$"
        errors.append(f"{path}: {error.message}")
    return errors


def validate(category: str, key: str, value: Any, schema: Optional[Dict[str, Any]] = None) -> ValidationResult:
    """
    Validate a configuration value.

    Args:
        category: Configuration category, e.g. ``search_config``
        key: Configuration key within the category
        value: JSON-compatible value
        schema: Optional JSON schema the value must also satisfy

    Returns:
        ValidationResult with blocking errors and advisory warnings
    """
    if value is None:
        return ValidationResult(["Configuration value is required"], [])

    errors: List[str] = []
    if schema:
        errors.extend(_schema_errors(schema, value))

    for rule, candidate in _applicable(get_rules().get(category, {}), key, value):
        if not _matches(rule, candidate):
            errors.append(rule["message"])

    warnings = [
        rule["message"]
        for rule, candidate in _applicable(get_warning_rules().get(category, {}), key, value)
        if _matches(rule, candidate)
    ]
    return ValidationResult(errors, warnings)
