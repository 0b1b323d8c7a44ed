"""
Render Audit
Builds the diagnostic AuditReport for one render attempt.

The report records what happened to each image and whether the evaluated markup
is clean. It is persisted for troubleshooting and never drives control flow.
"""
import logging
import re
from collections import Counter
from typing import Dict, Iterable, List, Mapping, Optional

from claimdocs.models.image_reference import ImageClass, ResolvedImage
from claimdocs.models.render_result import AuditReport, AuditVerdict, PlaceholderStatus
from claimdocs.services.errors import KeyMismatch, TableFull, UnevaluatedTemplate

logger = logging.getLogger(__name__)

# Template syntax that must never survive evaluation
PLACEHOLDER_MARKERS = ('{{', '{%', '<?=', '<?')

_IMAGE_MARKER_RE = re.compile(r'<img\b[^>]*\bdata-image="(?P<image_class>[A-Za-z0-9_]+)"[^>]*>', re.IGNORECASE)
_SNIPPET_RADIUS = 20


def find_unresolved_placeholders(markup: str) -> List[str]:
    """Short snippets around every leftover placeholder marker, in document order"""
    positions = set()
    for marker in PLACEHOLDER_MARKERS:
        start = markup.find(marker)
        while start != -1:
            positions.add(start)
            start = markup.find(marker, start + len(marker))

    snippets = []
    last_end = -1
    for position in sorted(positions):
        if position < last_end:
            continue  # '<?=' also matches '<?'
        snippet = markup[max(0, position - _SNIPPET_RADIUS):position + _SNIPPET_RADIUS]
        snippets.append(snippet.replace('\n', ' '))
        last_end = position + 3
    return snippets


def count_image_markers(markup: str) -> Dict[str, int]:
    """Embedded <img data-image="..."> markers per image class"""
    return dict(Counter(match.group('image_class') for match in _IMAGE_MARKER_RE.finditer(markup)))


def _image_outcomes(report: AuditReport, resolved: Mapping[ImageClass, ResolvedImage]) -> None:
    for image_class, image in resolved.items():
        report.per_image_outcome[image_class.value] = image.outcome
        if image.error:
            report.image_errors[image_class.value] = image.error
            report.findings.append(f"IMAGE_ERROR: {image_class.value}: {image.error}")


def _settle_verdict(report: AuditReport) -> AuditReport:
    if report.placeholder_status == PlaceholderStatus.UNEVALUATED:
        report.verdict = AuditVerdict.UNEVALUATED_TEMPLATE
    elif any(finding.startswith(KeyMismatch.code) for finding in report.findings):
        report.verdict = AuditVerdict.KEY_MISMATCH
    elif report.findings:
        report.verdict = AuditVerdict.DEGRADED
    else:
        report.verdict = AuditVerdict.OK
    return report


class RenderAudit:
    """Report builders for both render paths"""

    @staticmethod
    def for_markup(
        document_id: Optional[str],
        resolved: Mapping[ImageClass, ResolvedImage],
        markup: str,
    ) -> AuditReport:
        """
        Audit evaluated markup against the images that were resolved.

        A resolved image class with no embedded marker is a KEY_MISMATCH finding:
        the document still renders, with a blank image box.
        """
        report = AuditReport(document_id=document_id, renderer='primary')
        _image_outcomes(report, resolved)

        unresolved = find_unresolved_placeholders(markup)
        report.unresolved_placeholders = unresolved
        report.placeholder_status = PlaceholderStatus.UNEVALUATED if unresolved else PlaceholderStatus.CLEAN
        if unresolved:
            report.findings.append(f"{UnevaluatedTemplate.code}: {len(unresolved)} placeholder(s) left in markup")

        markers = count_image_markers(markup)
        report.embedded_image_markers = sum(markers.values())
        resolved_classes = [image_class.value for image_class, image in resolved.items() if image.ok]
        missing = [name for name in resolved_classes if not markers.get(name)]
        if missing:
            report.findings.append(
                f"{KeyMismatch.code}: resolved images without embedded markers: {', '.join(sorted(missing))}"
            )
            logger.warning(
                f"Image audit mismatch for document_id={document_id}: "
                f"resolved={sorted(resolved_classes)}, markers={markers}"
            )

        return _settle_verdict(report)

    @staticmethod
    def for_sheet(
        document_id: Optional[str],
        resolved: Mapping[ImageClass, ResolvedImage],
        embedded: Iterable[str],
        dropped_parts: int = 0,
        states: Iterable[str] = (),
    ) -> AuditReport:
        """Audit a cell-template render: images placed on the scratch sheet and table capacity"""
        report = AuditReport(
            document_id=document_id,
            renderer='legacy',
            placeholder_status=PlaceholderStatus.NOT_APPLICABLE,
        )
        _image_outcomes(report, resolved)

        embedded = list(embedded)
        report.embedded_image_markers = len(embedded)
        not_placed = [
            image_class.value for image_class, image in resolved.items()
            if image.ok and image_class.value not in embedded
        ]
        if not_placed:
            report.findings.append(f"IMAGE_NOT_PLACED: {', '.join(sorted(not_placed))}")
        if dropped_parts:
            report.findings.append(f"{TableFull.code}: {dropped_parts} part row(s) not written")

        report.render_states = list(states)
        return _settle_verdict(report)

    @staticmethod
    def failed(report: Optional[AuditReport], document_id: Optional[str], renderer: str, error: str) -> AuditReport:
        """Mark a report (or a fresh one) as belonging to a failed render"""
        report = report or AuditReport(document_id=document_id, renderer=renderer)
        report.findings.append(f"FAILED: {error}")
        report.verdict = AuditVerdict.FAILED
        return report

