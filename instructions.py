"""Versioned store of learned general and per-site instructions."""
from __future__ import annotations

import json
import logging
import re
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlparse

MAX_GENERAL_RULES = 50
MAX_RULES_PER_SITE = 12
MAX_SITES = 30

GENERAL_HEADING = "### GENERAL SPECIAL INSTRUCTIONS"
SITE_HEADING = "### SITE SPECIAL INSTRUCTIONS"

_WHITESPACE_RE = re.compile(r"\s+")
_LEADING_BULLET_RE = re.compile(r"^[-*\s]+")

# Checked in order; "do not" must precede "do".
_POLARITY_PREFIXES: Tuple[Tuple[str, int], ...] = (
    ("do not ", -1),
    ("don't ", -1),
    ("dont ", -1),
    ("never ", -1),
    ("avoid ", -1),
    ("always ", 1),
    ("prefer ", 1),
    ("do ", 1),
)


@dataclass
class InstructionSet:
    """Plain value copy of the store's rules."""

    general: List[str] = field(default_factory=list)
    per_site: Dict[str, List[str]] = field(default_factory=dict)
    version: int = 0

    def is_empty(self) -> bool:
        return not self.general and not any(self.per_site.values())

    def to_dict(self) -> dict:
        return {"general": list(self.general), "perSite": {k: list(v) for k, v in self.per_site.items()}}


def clean_rule(rule: str) -> str:
    """Strip whitespace and a leading bullet marker."""
    return _LEADING_BULLET_RE.sub("", str(rule or "").strip()).strip()


def canonicalize(rule: str) -> str:
    """Case- and whitespace-insensitive dedupe key."""
    return _WHITESPACE_RE.sub(" ", clean_rule(rule).lower()).strip()


def site_key(url_or_host: str) -> str:
    """Bare lowercase hostname: no scheme, ``www.``, port or path."""
    raw = str(url_or_host or "").strip()
    if not raw:
        return ""
    parsed = urlparse(raw if "://" in raw else f"//{raw}")
    host = (parsed.hostname or "").lower().rstrip(".")
    if host.startswith("www."):
        host = host[4:]
    return host


def rule_polarity(rule: str) -> Tuple[int, str]:
    """(polarity, remainder): +1 positive, -1 negative, 0 neutral."""
    text = canonicalize(rule).rstrip(".!")
    for prefix, polarity in _POLARITY_PREFIXES:
        if text.startswith(prefix):
            return polarity, text[len(prefix):].strip()
    return 0, text


def contradicts(existing: str, new: str) -> bool:
    """True when both rules state the same instruction with opposite polarity."""
    p_old, rest_old = rule_polarity(existing)
    p_new, rest_new = rule_polarity(new)
    return p_old != 0 and p_new != 0 and p_old != p_new and rest_old == rest_new


def dedupe_rules(rules: Iterable[str]) -> List[str]:
    seen = set()
    out: List[str] = []
    for rule in rules:
        cleaned = clean_rule(rule)
        key = canonicalize(cleaned)
        if not key or key in seen:
            continue
        seen.add(key)
        out.append(cleaned)
    return out


def merge_rules(existing: Iterable[str], incoming: Iterable[str], cap: int) -> List[str]:
    """Append new rules, drop only contradicted ones, keep the newest ``cap``."""
    merged = dedupe_rules(existing)
    for rule in dedupe_rules(incoming):
        key = canonicalize(rule)
        if any(canonicalize(r) == key for r in merged):
            continue
        merged = [r for r in merged if not contradicts(r, rule)]
        merged.append(rule)
    return merged[-cap:] if cap > 0 else []


class InstructionStore:
    """Process-lifetime rule store shared by the controller and the learner.

    Merges are synchronous, so interleaved learner tasks on one event loop
    apply in order and the last writer wins per rule.
    """

    def __init__(
        self,
        general: Optional[Iterable[str]] = None,
        per_site: Optional[Dict[str, Iterable[str]]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.logger = logger or logging.getLogger("pagepilot.instructions")
        self.version = 0
        self._general: List[str] = dedupe_rules(general or [])[-MAX_GENERAL_RULES:]
        self._sites: "OrderedDict[str, List[str]]" = OrderedDict()
        for site, rules in (per_site or {}).items():
            key = site_key(site)
            if key:
                self._sites[key] = dedupe_rules(rules)[-MAX_RULES_PER_SITE:]
        self._evict_sites()

    @property
    def general(self) -> List[str]:
        return list(self._general)

    @property
    def sites(self) -> List[str]:
        return list(self._sites)

    def rules_for(self, url: Optional[str]) -> List[str]:
        return list(self._sites.get(site_key(url or ""), []))

    def snapshot(self) -> InstructionSet:
        return InstructionSet(
            general=list(self._general),
            per_site={k: list(v) for k, v in self._sites.items()},
            version=self.version,
        )

    def set_general(self, rules: Iterable[str]) -> None:
        """Replace the general rules (deduped, capped)."""
        self._general = dedupe_rules(rules)[:MAX_GENERAL_RULES]
        self.version += 1

    def merge(self, update: InstructionSet, max_general: int = MAX_GENERAL_RULES) -> InstructionSet:
        """Fold a learner update into the store and return the new snapshot.

        ``max_general`` bounds the bullets taken from ``update``; the merged
        list is only held to the store's own cap.
        """
        before = self.snapshot()
        cap = max(1, min(max_general, MAX_GENERAL_RULES))
        incoming = dedupe_rules(update.general)[-cap:]
        self._general = merge_rules(self._general, incoming, MAX_GENERAL_RULES)

        for raw_site, rules in update.per_site.items():
            key = site_key(raw_site)
            incoming = dedupe_rules(rules)
            if not key or not incoming:
                continue
            current = self._sites.pop(key, [])
            self._sites[key] = merge_rules(current, incoming, MAX_RULES_PER_SITE)
        self._evict_sites()

        after = self.snapshot()
        if after.general != before.general or after.per_site != before.per_site:
            self.version += 1
            after.version = self.version
            self.logger.info(
                f"Instructions updated to v{self.version}: "
                f"{len(after.general)} general, {len(after.per_site)} sites"
            )
        return after

    def render(self, url: Optional[str] = None) -> str:
        """System instruction sections for the general rules and the current site."""
        sections = []
        if self._general:
            sections.append(GENERAL_HEADING + "\n" + "\n".join(f"- {r}" for r in self._general))
        host = site_key(url or "")
        site_rules = self._sites.get(host) if host else None
        if site_rules:
            sections.append(f"{SITE_HEADING} ({host})\n" + "\n".join(f"- {r}" for r in site_rules))
        return "\n\n".join(sections)

    def save(self, path: Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"version": self.version, **self.snapshot().to_dict()}
        path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")

    @classmethod
    def load(cls, path: Path, logger: Optional[logging.Logger] = None) -> "InstructionStore":
        """Load a saved store; a missing or unreadable file yields an empty store."""
        path = Path(path)
        log = logger or logging.getLogger("pagepilot.instructions")
        if not path.exists():
            return cls(logger=logger)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            log.warning(f"Failed to load instructions from {path}: {e}")
            return cls(logger=logger)
        general = data.get("general") if isinstance(data, dict) else None
        per_site = data.get("perSite") if isinstance(data, dict) else None
        store = cls(
            general=[r for r in general if isinstance(r, str)] if isinstance(general, list) else [],
            per_site={
                k: [r for r in v if isinstance(r, str)]
                for k, v in (per_site or {}).items()
                if isinstance(v, list)
            }
            if isinstance(per_site, dict)
            else {},
            logger=logger,
        )
        store.version = int(data.get("version") or 0) if isinstance(data, dict) else 0
        return store

    def _evict_sites(self) -> None:
        while len(self._sites) > MAX_SITES:
            evicted, _ = self._sites.popitem(last=False)
            self.logger.debug(f"Evicted site instructions for {evicted}")
