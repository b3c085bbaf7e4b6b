from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field

from doctranslate.core.settings import get_settings
from doctranslate.services.errors import DuplicatePlaceholderRemoved, UnresolvedPlaceholder
from doctranslate.services.placeholders import PlaceholderMapping
from doctranslate.services.spans import Placeholder, ResolutionOutcome

_SEP = r"[^A-Za-z0-9\n]"
_ID_CHAR = r"(?:(?!E\s*N\s*D\s*F\s*I\s*G|F\s*I\s*G\s*S\s*E\s*G)[A-Za-z0-9_])"
# Between id parts once the suffix is present: one punctuation mark with an
# optional space, or a single space ("1。1", "1,1", "1. 1").
_LOOSE_DOT = r"(?:[^\w\s]\s?|\s)"
_ID_PART_RE = re.compile(r"[A-Za-z0-9_]+")
# Matches the canonical [[FIGSEG:<seq>:<figure_id>:ENDFIG]] token after the
# engine has changed case, brackets, separators or whitespace, or dropped the
# suffix. Without the suffix only "." may join id parts.
PLACEHOLDER_RECOGNIZER_RE = re.compile(
    r"(?:[\[\(\{<【「〔［（]{1,3}\s*)?"
    r"F\s*I\s*G\s*S\s*E\s*G"
    rf"{_SEP}{{0,4}}(?P<seq>\d+)"
    rf"{_SEP}{{1,4}}"
    rf"(?:(?P<fid>{_ID_CHAR}+(?:{_LOOSE_DOT}{_ID_CHAR}+){{0,4}}?){_SEP}{{0,4}}E\s*N\s*D\s*F\s*I\s*G"
    rf"|(?P<bare_fid>{_ID_CHAR}+(?:\.{_ID_CHAR}+)*))"
    r"(?:\s*[\]\)\}>】」〕］）]{1,3})?",
    re.IGNORECASE,
)
logger = logging.getLogger(__name__)


@dataclass
class ResolvedDocument:
    text: str
    outcomes: list[ResolutionOutcome] = field(default_factory=list)
    warnings: list[UnresolvedPlaceholder | DuplicatePlaceholderRemoved] = field(default_factory=list)
    duplicates_removed: int = 0

    @property
    def unresolved(self) -> list[ResolutionOutcome]:
        return [item for item in self.outcomes if not item.resolved]


def render_figure_reference(template: str, figure_id: str, asset_ref: str) -> str:
    return template.format(figure_id=figure_id, asset_ref=asset_ref)


def normalize_figure_id(raw: str) -> str:
    """Rejoin id parts split by whatever separator the engine left behind."""
    return ".".join(_ID_PART_RE.findall(raw))


def _lookup(mapping: PlaceholderMapping, figure_id: str, sequence: int) -> Placeholder | None:
    found = mapping.for_figure(figure_id)
    if found is None:
        found = mapping.for_sequence(sequence)
    return found


def resolve_placeholders(
    text: str,
    mapping: PlaceholderMapping,
    assets: Mapping[str, str],
    *,
    reference_template: str | None = None,
) -> ResolvedDocument:
    template = reference_template or get_settings().figure_reference_template
    result = ResolvedDocument(text="")
    matched: dict[str, Placeholder] = {}
    unknown: list[ResolutionOutcome] = []

    def _replace(match: re.Match[str]) -> str:
        raw = match.group(0)
        figure_id = normalize_figure_id(match.group("fid") or match.group("bare_fid"))
        placeholder = _lookup(mapping, figure_id, int(match.group("seq")))
        if placeholder is None:
            unknown.append(ResolutionOutcome(token=raw, figure_id=figure_id, resolved=False, reason="unknown_figure"))
            result.warnings.append(UnresolvedPlaceholder(token=raw, figure_id=figure_id, reason="unknown_figure"))
            logger.warning("unrecognized figure in placeholder %r", raw)
            return raw
        if placeholder.figure_id in matched:
            result.duplicates_removed += 1
            result.warnings.append(DuplicatePlaceholderRemoved(token=raw, figure_id=placeholder.figure_id))
            logger.warning("duplicate placeholder for figure %s removed", placeholder.figure_id)
            return ""
        matched[placeholder.figure_id] = placeholder
        return render_figure_reference(template, placeholder.figure_id, assets[placeholder.figure_id])

    body = PLACEHOLDER_RECOGNIZER_RE.sub(_replace, text)

    appended: list[str] = []
    for placeholder in mapping:
        if placeholder.figure_id in matched:
            result.outcomes.append(
                ResolutionOutcome(token=placeholder.token, figure_id=placeholder.figure_id, resolved=True)
            )
            continue
        appended.append(render_figure_reference(template, placeholder.figure_id, assets[placeholder.figure_id]))
        result.outcomes.append(
            ResolutionOutcome(
                token=placeholder.token,
                figure_id=placeholder.figure_id,
                resolved=False,
                reason="dropped_by_engine",
            )
        )
        result.warnings.append(
            UnresolvedPlaceholder(token=placeholder.token, figure_id=placeholder.figure_id, reason="dropped_by_engine")
        )
        logger.warning("placeholder for figure %s missing from output; appending image at end", placeholder.figure_id)

    if appended:
        body = "\n\n".join([body.rstrip(), *appended]) + "\n" if body.strip() else "\n\n".join(appended) + "\n"
    result.outcomes.extend(unknown)
    result.text = body
    logger.info(
        "placeholder resolution: placeholders=%s resolved=%s appended=%s unknown=%s duplicates_removed=%s",
        len(mapping),
        len(matched),
        len(appended),
        len(unknown),
        result.duplicates_removed,
    )
    return result
