"""
Tagging Agent
-------------
Annotates search terms and product titles with attribute tags from a
caller-supplied trigger-word ontology:

  rule {category: "Format", tag: "Gummies", triggers: ["gummy", "chews"]}
  "sleep gummy for kids"  →  {"Format": ["Gummies"]}

A rule fires when any of its trigger phrases is a substring of the
lower-cased text. The ontology is always passed in; nothing is global.

Input  : list[SearchTermRecord | ProductRecord]
Output : list[TaggedRecord]
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from agents.base import Agent
from models.schemas import ProductRecord, SearchTermRecord, TagRule

logger = logging.getLogger(__name__)

_TRIGGER_SPLIT = re.compile(r"[|,]")

TagMap = Dict[str, List[str]]


# ─── Rule parsing ────────────────────────────────────────────────────────────


def split_triggers(raw: Union[str, Iterable[str], None]) -> tuple:
    """'gummy|gummies, chew' → ('gummy', 'gummies', 'chew')"""
    if raw is None:
        return ()
    pieces = _TRIGGER_SPLIT.split(raw) if isinstance(raw, str) else [
        p for item in raw if item for p in _TRIGGER_SPLIT.split(str(item))
    ]
    triggers = (p.strip().lower() for p in pieces)
    return tuple(dict.fromkeys(t for t in triggers if t))


def _as_rule(rule: Union[TagRule, Mapping[str, Any]]) -> Optional[TagRule]:
    if isinstance(rule, TagRule):
        return TagRule(rule.category, rule.tag, split_triggers(rule.triggers))
    if not isinstance(rule, Mapping):
        logger.warning(f"Unsupported tag rule {rule!r} skipped")
        return None
    category = rule.get("category", rule.get("Category"))
    tag = rule.get("tag", rule.get("Tag"))
    raw = rule.get("triggers", rule.get("trigger", rule.get("Trigger")))
    if not category or not tag:
        logger.warning(f"Tag rule without category or tag skipped: {dict(rule)}")
        return None
    return TagRule(str(category).strip(), str(tag).strip(), split_triggers(raw))


def parse_tag_ontology(rows: Any) -> List[TagRule]:
    """
    Build TagRules from ontology rows shaped like the ontology sheet:
    {"Category": ..., "Tag": ..., "Trigger": "a|b|c"}. Snake_case keys work too.
    """
    if not isinstance(rows, (list, tuple)):
        logger.error("Invalid tag ontology data: expected a list of rows")
        return []
    rules = [r for r in (_as_rule(row) for row in rows) if r is not None]
    logger.info(f"Parsed {len(rules)} tag rules from ontology")
    return rules


# ─── Matching ────────────────────────────────────────────────────────────────


def prepare_rules(rules: Sequence[Union[TagRule, Mapping[str, Any]]]) -> List[TagRule]:
    """Normalize rules once; rules without a usable trigger are dropped with a warning."""
    prepared: List[TagRule] = []
    for raw in rules or []:
        rule = _as_rule(raw)
        if rule is None:
            continue
        if not rule.triggers:
            logger.warning(
                f"Tag {rule.tag!r} in category {rule.category!r} has no usable triggers, skipped"
            )
            continue
        prepared.append(rule)
    return prepared


def match_tags(text: str, rules: Sequence[TagRule]) -> TagMap:
    """Tag `text` against rules already passed through `prepare_rules`."""
    lowered = (text or "").lower()
    matched: TagMap = {category: [] for category in dict.fromkeys(r.category for r in rules)}
    for rule in rules:
        tags = matched[rule.category]
        if rule.tag not in tags and any(trigger in lowered for trigger in rule.triggers):
            tags.append(rule.tag)
    return {category: tags for category, tags in matched.items() if tags}


def apply_tags(text: str, rules: Sequence[Union[TagRule, Mapping[str, Any]]]) -> TagMap:
    """
    Tag `text` against `rules`.

    Returns {category: [tag, ...]} with categories in first-seen rule order
    and tags in rule order; categories with no matching tag are omitted.
    """
    if not rules:
        return {}
    return match_tags(text, prepare_rules(rules))


def record_text(record: Union[SearchTermRecord, ProductRecord, str]) -> str:
    if isinstance(record, str):
        return record
    return record.text


@dataclass
class TaggedRecord:
    record: Union[SearchTermRecord, ProductRecord]
    tags: TagMap = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"record": self.record.to_dict(), "tags": self.tags}


# ─── Agent ───────────────────────────────────────────────────────────────────


class TaggingAgent(Agent):
    """Tags a batch of parsed records with a fixed ontology."""

    def __init__(self, rules: Sequence[Union[TagRule, Mapping[str, Any]]]):
        super().__init__(name="TaggingAgent")
        self.rules = prepare_rules(rules)

    def run(self, records: Sequence[Union[SearchTermRecord, ProductRecord]]) -> List[TaggedRecord]:
        tagged = [TaggedRecord(r, match_tags(record_text(r), self.rules)) for r in records]
        hits = sum(1 for t in tagged if t.tags)
        self.logger.info(f"Tagged {hits}/{len(tagged)} records with {len(self.rules)} rules")
        return tagged
