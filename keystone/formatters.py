"""
Terraform-style output formatting for Keystone operations.

This module renders plans, apply reports, state listings and outputs with
the familiar Terraform symbols and structure.
"""

import json
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.text import Text

from .models import (
    ApplyReport,
    ExecutionStatus,
    OperationType,
    Plan,
    PlanOperation,
    Reference,
    StateEntry,
    Template,
)


class TerraformStyleFormatter:
    """
    Terraform-style formatter for Keystone operations.

    Provides methods to format different types of output with Terraform-like
    symbols and structure:
    - `+` for create operations
    - `~` for update operations
    - `-/+` for replace operations
    - `-` for destroy operations
    """

    def __init__(self, console: Optional[Console] = None):
        """Initialize formatter with Rich console."""
        self.console = console or Console()

        # Color scheme matching Terraform output
        self.colors = {
            OperationType.CREATE: 'green',
            OperationType.UPDATE: 'yellow',
            OperationType.REPLACE: 'magenta',
            OperationType.DESTROY: 'red',
            OperationType.NO_OP: 'dim',
            'header': 'bold blue',
            'comment': 'dim',
            'success': 'green',
            'failure': 'red',
            'warning': 'yellow',
        }

        # Operation symbols
        self.symbols = {
            OperationType.CREATE: '+',
            OperationType.UPDATE: '~',
            OperationType.REPLACE: '-/+',
            OperationType.DESTROY: '-',
            OperationType.NO_OP: ' ',
        }

        self.status_symbols = {
            ExecutionStatus.SUCCESS: ('✓', 'success'),
            ExecutionStatus.NO_OP: ('·', 'comment'),
            ExecutionStatus.FAILED: ('✗', 'failure'),
            ExecutionStatus.SKIPPED: ('↷', 'warning'),
            ExecutionStatus.CANCELLED: ('⊘', 'warning'),
        }

    def format_plan(self, plan: Plan, destroy: bool = False) -> Text:
        """
        Format a plan showing what Keystone will do, wave by wave.

        Args:
            plan: Scheduled plan
            destroy: Word the header for a destroy run

        Returns:
            Styled plan output
        """
        output = Text()

        if plan.is_empty:
            output.append("No changes. Infrastructure matches the configuration.\n", style=self.colors['success'])
            return output

        verb = "destroy" if destroy else "perform"
        output.append(f"Keystone will {verb} the following actions:\n\n", style=self.colors['header'])

        for index, wave in enumerate(plan.waves, start=1):
            output.append(f"  # wave {index}\n", style=self.colors['comment'])
            for operation in wave:
                self._append_operation(output, operation)
                waits_for = plan.dependencies.get(operation.resource_id)
                if waits_for:
                    output.append(f"      # after {', '.join(waits_for)}\n", style=self.colors['comment'])
            output.append("\n")

        output.append(self._format_plan_summary(plan), style=self.colors['header'])
        return output

    def _append_operation(self, output: Text, operation: PlanOperation) -> None:
        color = self.colors[operation.action]
        symbol = self.symbols[operation.action]
        address = operation.prior.address if operation.prior else operation.resource_id
        resource_type, _, name = address.partition(".")

        output.append(f"  {symbol} resource \"{resource_type}\" \"{name}\"", style=color)
        if operation.prior is not None and operation.prior.deposed:
            output.append(f"  # deposed object {operation.prior.provider_id}", style=self.colors['comment'])
        if operation.action == OperationType.REPLACE:
            output.append(
                f"  # forces replacement: {', '.join(operation.replace_attributes)}",
                style=self.colors['comment'],
            )
        output.append("\n")

        for line in self._format_attributes(operation):
            output.append(f"      {line}\n", style=color)

    def _format_attributes(self, operation: PlanOperation) -> List[str]:
        """Attribute lines relevant to the operation."""
        lines = []
        if operation.action == OperationType.CREATE:
            for key in sorted(operation.planned_attributes):
                lines.append(f"{key} = {self._format_value(operation.planned_attributes[key])}")
        elif operation.action in (OperationType.UPDATE, OperationType.REPLACE):
            prior = operation.prior.attributes if operation.prior else {}
            for key in operation.changed_attributes:
                old = self._format_value(prior.get(key))
                new = self._format_value(operation.planned_attributes.get(key))
                lines.append(f"{key} = {old} -> {new}")
            for key in operation.deferred_attributes:
                lines.append(f"{key} = (known after apply)")
            if operation.dependencies_changed and operation.node is not None:
                old = ", ".join(operation.prior.dependencies) or "none"
                new = ", ".join(operation.node.dependency_addresses()) or "none"
                lines.append(f"# dependencies: {old} -> {new}")
        elif operation.action == OperationType.DESTROY and operation.prior is not None:
            lines.append(f"id = {self._format_value(operation.prior.provider_id)}")
        return lines

    def _format_plan_summary(self, plan: Plan) -> str:
        counts = plan.count_by_action()
        return (
            f"Plan: {counts['create']} to add, {counts['update']} to change, "
            f"{counts['replace']} to replace, {counts['destroy']} to destroy "
            f"({counts['no_op']} unchanged).\n"
        )

    def format_apply(self, report: ApplyReport, show_unchanged: bool = False, verb: str = "Apply") -> Text:
        """
        Format an apply or destroy report showing each operation outcome.

        Args:
            report: Report returned by the executor
            show_unchanged: Also list resources that needed no change
            verb: Run being reported, "Apply" or "Destroy"

        Returns:
            Styled apply output
        """
        output = Text()
        heading = "destroyed the recorded resources" if verb == "Destroy" else "applied the configuration"
        output.append(f"Keystone {heading}:\n\n", style=self.colors['header'])

        for result in report.results:
            if result.status == ExecutionStatus.NO_OP and not show_unchanged:
                continue
            symbol, color = self.status_symbols[result.status]
            output.append(f"  {symbol} {result.resource_id}: ", style=self.colors[color])
            output.append(f"{result.action.value} {result.status.value}")
            if result.attempts > 1:
                output.append(f" after {result.attempts} attempts", style=self.colors['comment'])
            output.append(f" ({result.execution_time:.2f}s)\n", style=self.colors['comment'])

            if result.error_message:
                output.append(f"      {result.error_message}\n", style=self.colors[color])

        output.append("\n")
        output.append(self._format_apply_summary(report, verb))
        return output

    def _format_apply_summary(self, report: ApplyReport, verb: str) -> Text:
        applied = len(report.by_status(ExecutionStatus.SUCCESS))
        unchanged = len(report.by_status(ExecutionStatus.NO_OP))
        failed = len(report.by_status(ExecutionStatus.FAILED))
        skipped = len(report.by_status(ExecutionStatus.SKIPPED))
        cancelled = len(report.by_status(ExecutionStatus.CANCELLED))

        summary = (
            f"Resources: {applied} applied, {unchanged} unchanged, {failed} failed, "
            f"{skipped} skipped, {cancelled} cancelled.\n"
        )
        if report.success:
            return Text(f"{verb} complete! {summary}", style=self.colors['success'])
        if report.cancelled:
            return Text(f"{verb} cancelled. {summary}", style=self.colors['warning'])
        return Text(f"{verb} finished with errors. {summary}", style=self.colors['failure'])

    def format_state(self, entries: List[StateEntry]) -> Text:
        """Format the stored state entries."""
        output = Text()
        if not entries:
            output.append("No resources in state.\n", style=self.colors['comment'])
            return output

        for entry in entries:
            output.append(f"{entry.address}", style="bold")
            if entry.deposed:
                output.append(" (deposed)", style=self.colors['warning'])
            output.append(f"  id={entry.provider_id} version={entry.version}", style=self.colors['comment'])
            output.append(f"  updated {entry.updated_at:%Y-%m-%d %H:%M:%S}\n", style=self.colors['comment'])
            if entry.dependencies:
                output.append(f"    depends on: {', '.join(entry.dependencies)}\n", style=self.colors['comment'])
        return output

    def format_outputs(self, outputs: Dict[str, Any], sensitive: Optional[List[str]] = None) -> Text:
        """Format document outputs, masking sensitive ones."""
        output = Text()
        if not outputs:
            output.append("No outputs.\n", style=self.colors['comment'])
            return output

        hidden = set(sensitive or [])
        for name in sorted(outputs):
            value = "(sensitive)" if name in hidden else self._format_value(outputs[name])
            output.append(f"{name} = ", style="bold")
            output.append(f"{value}\n")
        return output

    def _format_value(self, value: Any) -> str:
        """Format a value for display."""
        if isinstance(value, (Reference, Template)):
            return "(known after apply)"
        if isinstance(value, str):
            return f'"{value}"'
        if isinstance(value, bool):
            return str(value).lower()
        if value is None:
            return "null"
        if isinstance(value, (dict, list, tuple)):
            return json.dumps(value, sort_keys=True, default=str)
        return str(value)
