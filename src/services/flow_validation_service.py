"""
Flow Validation Service
Checks a flow graph against the structural rules an automation must meet
before it can go live.
"""
from typing import List, Optional

from utils.log_utils import LogUtil
from models.flow_node_data import FlowNode
from models.flow_edge_data import FlowEdge
from models.validation_data import ValidationIssue, ValidationReport
from services.internal.integration_service import IntegrationService

# Severities that keep a flow from becoming active
BLOCKING_SEVERITIES = ("error", "integration")


class FlowValidationService:
    """
    Produces an ordered list of validation issues. Issues are data: a flow
    may be saved with any issue, only activation is gated on them.
    """

    def __init__(self, log_util: LogUtil, integration_service: Optional[IntegrationService] = None):
        self.log_util = log_util
        self.integration_service = integration_service

    def validate(self, nodes: List[FlowNode], edges: List[FlowEdge], check_integrations: bool = True) -> List[ValidationIssue]:
        issues: List[ValidationIssue] = []

        # 1. Trigger cardinality
        triggers = [node for node in nodes if node.type == "trigger"]
        if len(triggers) == 0:
            issues.append(ValidationIssue(severity="error", message="Flow must have a trigger node"))
        elif len(triggers) > 1:
            issues.append(ValidationIssue(severity="error", message="Flow can only have one trigger node"))

        # 2. Exit presence
        if not any(node.type == "exit" for node in nodes):
            issues.append(ValidationIssue(
                severity="warning",
                message="Flow has no exit node; users will complete when no outgoing edges remain"
            ))

        # 3. Connectivity
        targets = {edge.target for edge in edges}
        sources = {edge.source for edge in edges}
        for node in nodes:
            if node.type != "trigger" and node.id not in targets:
                issues.append(ValidationIssue(
                    severity="error",
                    node_id=node.id,
                    message=f"\"{self._label(node)}\" has no incoming connections"
                ))
            if node.type != "exit" and node.id not in sources:
                issues.append(ValidationIssue(
                    severity="warning",
                    node_id=node.id,
                    message=f"\"{self._label(node)}\" has no outgoing connections"
                ))

        # 4. Type specific
        node_ids = {node.id for node in nodes}
        for node in nodes:
            if node.type == "split":
                total = sum(variant.percentage for variant in node.config.variants)
                if abs(total - 100) > 1e-9:
                    issues.append(ValidationIssue(
                        severity="error",
                        node_id=node.id,
                        message=f"\"{self._label(node)}\" split percentages sum to {total:g}, expected 100"
                    ))
            elif node.type == "goto":
                if node.config.targetNodeId not in node_ids:
                    issues.append(ValidationIssue(
                        severity="error",
                        node_id=node.id,
                        message=f"\"{self._label(node)}\" jumps to a node that does not exist"
                    ))

        # 5. Integration readiness
        if check_integrations and self.integration_service is not None:
            for node in nodes:
                node_key = self.integration_service.node_key(node)
                if node_key is None:
                    continue
                missing = self.integration_service.get_missing_requirement(node_key)
                if missing is not None:
                    issues.append(ValidationIssue(
                        severity="integration",
                        node_id=node.id,
                        message=f"\"{self._label(node)}\": {missing.description}"
                    ))

        return issues

    def build_report(self, nodes: List[FlowNode], edges: List[FlowEdge], check_integrations: bool = True) -> ValidationReport:
        issues = self.validate(nodes, edges, check_integrations)
        return ValidationReport(
            issues=issues,
            can_save=True,
            can_activate=not self.blocking_issues(issues)
        )

    @staticmethod
    def blocking_issues(issues: List[ValidationIssue]) -> List[ValidationIssue]:
        return [issue for issue in issues if issue.severity in BLOCKING_SEVERITIES]

    @staticmethod
    def _label(node: FlowNode) -> str:
        return node.label or node.id
