"""
Compliance Reporting

Rolls resolution results for many resources into one report: where
governance is missing (gaps), what is switched off (suppressions), what
only reports instead of enforcing (audit mode), and which exemptions are
about to lapse.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Iterable, Optional

from pydantic import BaseModel, Field

from govcore.entity import EntityType, ensure_utc, new_id, utcnow
from govcore.journal.records import ChangeRecord
from govcore.resolution.engine import ResolutionEngine
from govcore.resolution.models import EffectivePolicySet, GapKind

if TYPE_CHECKING:
    from govcore.store.store import GovernanceStore

logger = logging.getLogger(__name__)


class GapFinding(BaseModel):
    """A resource the report could not show as governed."""

    resource: str
    kind: GapKind
    message: str
    entity_id: Optional[str] = None


class SuppressionFinding(BaseModel):
    resource: str
    assignment_id: str
    assignment_name: str
    policy_key: str
    member_reference_id: Optional[str] = None
    exemption_id: str
    category: str
    justification: str
    expires_at: Optional[datetime] = None


class AuditModeFinding(BaseModel):
    """An enforcing effect that is only reported because of ``Audit`` mode."""

    resource: str
    assignment_id: str
    assignment_name: str
    policy_key: str


class ExpiringExemption(BaseModel):
    exemption_id: str
    name: str
    policy_key: str
    target: str
    expires_at: datetime


class ComplianceReport(BaseModel):
    """Governance coverage report over a set of resources.

    Attributes:
        report_id: Unique report identifier.
        generated_at: When the report was generated.
        evaluated_at: Point in time the resources were resolved at.
        environment_id: Environment the report was scoped to, if any.
        resources_evaluated: Number of resources resolved.
        resources_governed: Resources with at least one effective,
            unsuppressed assignment and no gap.
        coverage_score: ``resources_governed`` as a percentage (0-100).
        gaps: Every gap finding.
        suppressions: Entries and set members suppressed by exemptions.
        audit_only: Enforcing effects downgraded by ``Audit`` mode.
        expiring_exemptions: Exemptions lapsing inside the warning window.
        recommendations: Actionable follow-ups (max 10).
    """

    report_id: str = Field(default_factory=lambda: new_id("report"))
    generated_at: datetime = Field(default_factory=utcnow)
    evaluated_at: datetime
    environment_id: Optional[str] = None

    resources_evaluated: int = 0
    resources_governed: int = 0
    coverage_score: float = 100.0

    gaps: list[GapFinding] = Field(default_factory=list)
    suppressions: list[SuppressionFinding] = Field(default_factory=list)
    audit_only: list[AuditModeFinding] = Field(default_factory=list)
    expiring_exemptions: list[ExpiringExemption] = Field(default_factory=list)

    recommendations: list[str] = Field(default_factory=list)


class ComplianceReporter:
    """
    Builds compliance reports from the resolution engine and the journal.

    Args:
        store: The shared governance store.
        resolver: Resolution engine to use; one is built when omitted.
        expiry_warning: How far ahead an exemption counts as expiring.
    """

    def __init__(
        self,
        store: GovernanceStore,
        resolver: Optional[ResolutionEngine] = None,
        expiry_warning: timedelta = timedelta(days=14),
    ) -> None:
        self._store = store
        self._resolver = resolver or ResolutionEngine(store)
        self._expiry_warning = expiry_warning

    def report(
        self,
        resources: Optional[Iterable[str]] = None,
        environment_id: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> ComplianceReport:
        """Resolve *resources* and summarise what governs them.

        Args:
            resources: Resources to evaluate. Defaults to every registered
                scope (of *environment_id*, when given) plus every scope
                assignments target directly.
            environment_id: Restrict the default resource list.
            at: Evaluation time; defaults to now.
        """
        at = ensure_utc(at) if at is not None else self._store.now()
        view = self._store.snapshot()
        if resources is None:
            resources = self._default_resources(view, environment_id)
        results = [self._resolver.resolve_in(view, resource, at) for resource in resources]

        report = ComplianceReport(evaluated_at=at, environment_id=environment_id)
        for result in results:
            self._collect(report, result)
        report.resources_evaluated = len(results)
        if results:
            report.coverage_score = round(report.resources_governed / len(results) * 100, 2)

        horizon = at + self._expiry_warning
        for exemption in view.all(EntityType.EXEMPTION):
            if exemption.expires_at is not None and at < exemption.expires_at <= horizon:
                report.expiring_exemptions.append(ExpiringExemption(
                    exemption_id=exemption.id,
                    name=exemption.name,
                    policy_key=exemption.policy.key,
                    target=str(exemption.target),
                    expires_at=exemption.expires_at,
                ))

        report.recommendations = self._recommendations(report)[:10]
        logger.info(
            "Compliance report %s: %d resource(s), %.1f%% governed, %d gap(s)",
            report.report_id, report.resources_evaluated, report.coverage_score, len(report.gaps),
        )
        return report

    def change_history(
        self,
        entity_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[ChangeRecord]:
        """Journaled changes for audits, oldest first."""
        return self._store.journal.query(entity_id=entity_id, start=start, end=end)

    @staticmethod
    def _default_resources(view, environment_id: Optional[str]) -> list[str]:
        index = view.scope_index
        if environment_id is not None:
            return sorted(index.scopes_of(environment_id))
        resources = set(index.registered)
        for assignment in view.all(EntityType.ASSIGNMENT):
            if assignment.target.scope is not None:
                resources.add(assignment.target.scope)
        return sorted(resources)

    @staticmethod
    def _collect(report: ComplianceReport, result: EffectivePolicySet) -> None:
        for gap in result.gaps:
            report.gaps.append(GapFinding(resource=result.resource, **gap.model_dump()))
        for entry in result.entries:
            if entry.suppressed and entry.suppression is not None:
                report.suppressions.append(SuppressionFinding(
                    resource=result.resource,
                    assignment_id=entry.assignment_id,
                    assignment_name=entry.assignment_name,
                    policy_key=entry.policy_key,
                    **entry.suppression.model_dump(exclude={"exemption_name"}),
                ))
            else:
                for member in entry.members:
                    if member.suppressed and member.suppression is not None:
                        report.suppressions.append(SuppressionFinding(
                            resource=result.resource,
                            assignment_id=entry.assignment_id,
                            assignment_name=entry.assignment_name,
                            policy_key=entry.policy_key,
                            member_reference_id=member.reference_id,
                            **member.suppression.model_dump(exclude={"exemption_name"}),
                        ))
            if entry.effective and entry.reporting_only and not entry.suppressed:
                report.audit_only.append(AuditModeFinding(
                    resource=result.resource,
                    assignment_id=entry.assignment_id,
                    assignment_name=entry.assignment_name,
                    policy_key=entry.policy_key,
                ))
        if result.effective and not result.gaps:
            report.resources_governed += 1

    @staticmethod
    def _recommendations(report: ComplianceReport) -> list[str]:
        recommendations = []
        for gap in report.gaps:
            if gap.kind == GapKind.NO_ENVIRONMENT:
                recommendations.append(f"Register {gap.resource} (or an ancestor) to an environment")
            elif gap.kind == GapKind.NO_ASSIGNMENTS:
                recommendations.append(f"Assign policies reaching {gap.resource}")
            else:
                recommendations.append(f"Fix {gap.kind.value} at {gap.resource}: {gap.message}")
        for exemption in report.expiring_exemptions:
            recommendations.append(
                f"Review exemption {exemption.name}, expiring {exemption.expires_at.isoformat()}"
            )
        for finding in report.audit_only:
            recommendations.append(
                f"Switch {finding.assignment_name} to Enforce once audit results for {finding.resource} are clean"
            )
        return recommendations
