"""Terminal classification of a finished request.

``classify`` is pure and is called exactly once per request, after the
last stage, on the final envelope.
"""

from __future__ import annotations

from src.shared.constants import OUTPUT_STRUCTURAL_REPORT, STAGE_VALIDATION
from src.workflow_builder.envelope import Envelope
from src.workflow_builder.models import (
    ErrorKind,
    QualityReview,
    StructuralReport,
    Terminal,
)

# User-facing caveat per error kind; never includes internal error text.
_CAVEATS: dict[ErrorKind, str] = {
    ErrorKind.GENERATION: "Part of the design could not be generated; the result may be incomplete.",
    ErrorKind.TIMEOUT: "A design step took too long and was skipped; the result may be incomplete.",
    ErrorKind.GENERATOR_FAILURE: "A design step was declined by the generator; the result may be incomplete.",
    ErrorKind.PARSE: "Part of the generated output could not be read; the result may be incomplete.",
    ErrorKind.STRUCTURAL: "The workflow has structural issues that need manual review.",
    ErrorKind.INTERNAL: "An internal problem occurred while processing the request.",
    ErrorKind.VALIDATION: "The request could not be validated.",
}


def structural_report(envelope: Envelope) -> StructuralReport | None:
    report = envelope.output(OUTPUT_STRUCTURAL_REPORT)
    return report if isinstance(report, StructuralReport) else None


def quality_review(envelope: Envelope) -> QualityReview | None:
    review = envelope.output(STAGE_VALIDATION)
    return review if isinstance(review, QualityReview) else None


def classify(envelope: Envelope) -> Terminal:
    """Return the terminal classification of *envelope*.

    * ``FATAL`` when any error record is fatal.
    * ``WARNING`` when there is any non-fatal error, the structural
      report lists any issue, or the quality review flagged the
      document.  Each condition is checked on its own.
    * ``SUCCESS`` otherwise.
    """
    if any(record.fatal for record in envelope.errors):
        return Terminal.FATAL

    has_errors = bool(envelope.errors)

    report = structural_report(envelope)
    has_structural_issues = report is not None and bool(report.issues)

    review = quality_review(envelope)
    review_flagged = review is not None and review.flagged

    if has_errors or has_structural_issues or review_flagged:
        return Terminal.WARNING
    return Terminal.SUCCESS


def collect_caveats(envelope: Envelope) -> list[str]:
    """User-facing caveat lines for a warning outcome.

    Lines are derived from error kinds, structural issue messages
    (which only name step ids) and the quality review issues.
    """
    caveats: list[str] = []
    for record in envelope.errors:
        line = _CAVEATS.get(record.kind)
        if line and line not in caveats:
            caveats.append(line)

    report = structural_report(envelope)
    if report is not None:
        caveats.extend(issue.message for issue in report.issues)

    review = quality_review(envelope)
    if review is not None and review.flagged:
        if review.issues:
            caveats.extend(f"Review: {issue}" for issue in review.issues)
        else:
            caveats.append("Review: the workflow was not confirmed as valid.")
    return caveats
