"""
Condition Service
Resolves {{variable}} templates and evaluates condition rules against
the user profile, the enrollment variables and event properties.
"""
import re
from typing import Dict, Any, List, Optional, TypeVar

from pydantic import BaseModel

from utils.log_utils import LogUtil
from models.flow_node_data import ConditionRule
from models.flow_settings_data import FlowVariable
from models.flow_user_context import FlowUserContext

TEMPLATE_PATTERN = re.compile(r"\{\{(.+?)\}\}")

ConfigT = TypeVar("ConfigT", bound=BaseModel)


def stringify(value: Any) -> str:
    """
    String form used by every string comparison and template substitution.
    Booleans render lowercase and integral floats drop the fraction, so
    JSON values compare the way the editor shows them.
    """
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (list, tuple)):
        return ",".join(stringify(item) for item in value)
    return str(value)


def event_name_matches(pattern: Optional[str], event_name: Optional[str]) -> bool:
    """
    Match an event name against a pattern where "*" matches any run of
    characters, e.g. "trial.*" matches "trial.started". No pattern matches all.
    """
    if not pattern:
        return True
    regex = "^" + ".*".join(re.escape(part) for part in pattern.split("*")) + "$"
    return re.match(regex, event_name or "") is not None


def coerce_number(value: Any) -> float:
    # Non-numeric values compare as zero
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


class ConditionService:
    """
    Stateless evaluation helpers shared by trigger matching, condition and
    filter nodes and action template resolution.
    """

    def __init__(self, log_util: LogUtil):
        self.log_util = log_util

    def resolve_field_value(
        self,
        field: str,
        user: Optional[FlowUserContext] = None,
        variables: Optional[Dict[str, Any]] = None,
        event_properties: Optional[Dict[str, Any]] = None
    ) -> Any:
        """
        Resolve a rule field reference.

        Supported forms: user.<prop>, account.<prop>, var.<key>,
        event.<prop> and a bare variable key.
        """
        variables = variables or {}
        if field.startswith("user."):
            return user.user_fields().get(field[len("user."):]) if user else None
        if field.startswith("account."):
            return user.account.get(field[len("account."):]) if user else None
        if field.startswith("var."):
            return variables.get(field[len("var."):])
        if field.startswith("event."):
            return (event_properties or {}).get(field[len("event."):])
        return variables.get(field)

    def resolve_template(
        self,
        template: str,
        variables: Optional[Dict[str, Any]] = None,
        user: Optional[FlowUserContext] = None
    ) -> str:
        """
        Replace {{key}} placeholders. Enrollment variables win over user and
        account fields; unknown placeholders are left as they are.
        """
        variables = variables or {}

        def _replace(match: "re.Match[str]") -> str:
            key = match.group(1).strip()
            if key in variables:
                return stringify(variables[key])
            if key.startswith("user.") and user is not None:
                return stringify(user.user_fields().get(key[len("user."):]))
            if key.startswith("account.") and user is not None:
                return stringify(user.account.get(key[len("account."):]))
            return "{{" + key + "}}"

        return TEMPLATE_PATTERN.sub(_replace, template)

    def _resolve_value(self, value: Any, variables: Dict[str, Any], user: Optional[FlowUserContext]) -> Any:
        if isinstance(value, str):
            return self.resolve_template(value, variables, user)
        if isinstance(value, dict):
            return {key: self._resolve_value(item, variables, user) for key, item in value.items()}
        if isinstance(value, list):
            return [self._resolve_value(item, variables, user) for item in value]
        return value

    def resolve_config_templates(
        self,
        config: ConfigT,
        variables: Optional[Dict[str, Any]] = None,
        user: Optional[FlowUserContext] = None
    ) -> ConfigT:
        """
        Copy of a node config with every string field template-resolved
        """
        resolved = self._resolve_value(config.model_dump(), variables or {}, user)
        return type(config).model_validate(resolved)

    def build_initial_variables(
        self,
        flow_variables: List[FlowVariable],
        user: Optional[FlowUserContext] = None,
        event_properties: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Build the variable bag of a new enrollment from the flow's variables.
        Missing sources fall back to the variable's default value.
        """
        bag: Dict[str, Any] = {}
        for variable in flow_variables:
            default = variable.defaultValue if variable.defaultValue is not None else ""
            value = None
            if variable.source == "user_property" and user is not None and variable.sourceField:
                value = user.user_fields().get(variable.sourceField)
            elif variable.source == "account_property" and user is not None and variable.sourceField:
                value = user.account.get(variable.sourceField)
            elif variable.source == "event_property" and event_properties and variable.sourceField:
                value = event_properties.get(variable.sourceField)
            bag[variable.key] = value if value is not None else default
        return bag

    def evaluate_rule(
        self,
        rule: ConditionRule,
        user: Optional[FlowUserContext] = None,
        variables: Optional[Dict[str, Any]] = None,
        event_properties: Optional[Dict[str, Any]] = None
    ) -> bool:
        actual = self.resolve_field_value(rule.field, user, variables, event_properties)
        expected = rule.value
        operator = rule.operator

        if operator == "equals":
            return stringify(actual) == stringify(expected)
        elif operator == "not_equals":
            return stringify(actual) != stringify(expected)
        elif operator == "contains":
            if isinstance(actual, (list, tuple)):
                return stringify(expected) in [stringify(item) for item in actual]
            return stringify(expected) in stringify(actual)
        elif operator == "not_contains":
            if isinstance(actual, (list, tuple)):
                return stringify(expected) not in [stringify(item) for item in actual]
            return stringify(expected) not in stringify(actual)
        elif operator == "starts_with":
            return stringify(actual).startswith(stringify(expected))
        elif operator == "ends_with":
            return stringify(actual).endswith(stringify(expected))
        elif operator == "greater_than":
            return coerce_number(actual) > coerce_number(expected)
        elif operator == "less_than":
            return coerce_number(actual) < coerce_number(expected)
        elif operator == "greater_or_equal":
            return coerce_number(actual) >= coerce_number(expected)
        elif operator == "less_or_equal":
            return coerce_number(actual) <= coerce_number(expected)
        elif operator == "is_set":
            return actual is not None and actual != "" and actual != []
        elif operator == "is_not_set":
            return actual is None or actual == "" or actual == []
        elif operator == "in_list":
            return stringify(actual) in [stringify(item) for item in (rule.values or [])]
        elif operator == "not_in_list":
            return stringify(actual) not in [stringify(item) for item in (rule.values or [])]
        elif operator == "matches_regex":
            try:
                return re.search(stringify(expected), stringify(actual)) is not None
            except re.error as e:
                self.log_util.warning(
                    service_name="ConditionService",
                    message=f"Invalid regex '{expected}' for field {rule.field}: {str(e)}"
                )
                return False

        self.log_util.warning(
            service_name="ConditionService",
            message=f"Unknown condition operator: '{operator}', defaulting to False"
        )
        return False

    def evaluate_condition(
        self,
        logic: str,
        rules: List[ConditionRule],
        user: Optional[FlowUserContext] = None,
        variables: Optional[Dict[str, Any]] = None,
        event_properties: Optional[Dict[str, Any]] = None
    ) -> bool:
        """
        Combine rule results with AND/OR. An empty rule list always matches.
        """
        if not rules:
            return True
        results = (self.evaluate_rule(rule, user, variables, event_properties) for rule in rules)
        if logic == "OR":
            return any(results)
        return all(results)
