"""Unit tests for instructions module."""
from __future__ import annotations

import json

from instructions import (
    GENERAL_HEADING,
    MAX_GENERAL_RULES,
    MAX_RULES_PER_SITE,
    MAX_SITES,
    InstructionSet,
    InstructionStore,
    canonicalize,
    contradicts,
    merge_rules,
    rule_polarity,
    site_key,
)


class TestHelpers:
    def test_canonicalize(self):
        assert canonicalize("  - Use   the Search BAR ") == "use the search bar"

    def test_site_key(self):
        assert site_key("https://www.Example.com:8443/path?q=1") == "example.com"
        assert site_key("docs.python.org") == "docs.python.org"
        assert site_key("") == ""

    def test_rule_polarity(self):
        assert rule_polarity("Never open popups.") == (-1, "open popups")
        assert rule_polarity("Do not open popups") == (-1, "open popups")
        assert rule_polarity("Always open popups") == (1, "open popups")
        assert rule_polarity("Open popups") == (0, "open popups")

    def test_contradicts(self):
        assert contradicts("Always accept cookies", "Never accept cookies")
        assert not contradicts("Always accept cookies", "Always accept cookies")
        assert not contradicts("Accept cookies", "Never accept cookies")
        assert not contradicts("Always accept cookies", "Never reject cookies")


class TestMergeRules:
    def test_union_preserves_order(self):
        assert merge_rules(["A", "B"], ["B", "C"], 50) == ["A", "B", "C"]

    def test_duplicates_ignore_case_and_spacing(self):
        assert merge_rules(["Use the search bar"], ["use  the SEARCH bar"], 50) == ["Use the search bar"]

    def test_contradiction_replaced(self):
        merged = merge_rules(["Always accept cookies", "Be brief"], ["Never accept cookies"], 50)
        assert merged == ["Be brief", "Never accept cookies"]

    def test_cap_keeps_newest(self):
        existing = [f"rule {i}" for i in range(10)]
        assert merge_rules(existing, ["rule 10"], 5) == ["rule 6", "rule 7", "rule 8", "rule 9", "rule 10"]


class TestInstructionStore:
    def test_merge_general(self):
        store = InstructionStore(general=["A", "B"])
        snapshot = store.merge(InstructionSet(general=["B", "C"]))
        assert snapshot.general == ["A", "B", "C"]
        assert snapshot.version == 1
        assert store.version == 1

    def test_noop_merge_keeps_version(self):
        store = InstructionStore(general=["A"])
        store.merge(InstructionSet(general=["a"]))
        assert store.version == 0

    def test_learner_cap_respected(self):
        store = InstructionStore()
        store.merge(InstructionSet(general=[f"rule {i}" for i in range(30)]), max_general=20)
        assert len(store.general) == 20
        assert store.general[-1] == "rule 29"

    def test_learner_cap_does_not_evict_existing_rules(self):
        store = InstructionStore()
        store.set_general([f"rule {i}" for i in range(40)])
        store.merge(InstructionSet(general=["new rule"]), max_general=20)
        assert len(store.general) == 41
        assert store.general[0] == "rule 0"
        assert store.general[-1] == "new rule"

    def test_hard_cap(self):
        store = InstructionStore()
        store.merge(InstructionSet(general=[f"rule {i}" for i in range(80)]), max_general=500)
        assert len(store.general) == MAX_GENERAL_RULES

    def test_site_rules_keyed_by_host(self):
        store = InstructionStore()
        store.merge(InstructionSet(per_site={"https://www.Shop.example/cart": ["Close the cookie banner"]}))
        assert store.sites == ["shop.example"]
        assert store.rules_for("http://shop.example/item/4") == ["Close the cookie banner"]
        assert store.rules_for("https://other.example") == []

    def test_site_rule_cap(self):
        store = InstructionStore()
        store.merge(InstructionSet(per_site={"a.com": [f"rule {i}" for i in range(20)]}))
        assert len(store.rules_for("a.com")) == MAX_RULES_PER_SITE

    def test_least_recently_updated_site_evicted(self):
        store = InstructionStore()
        for i in range(MAX_SITES):
            store.merge(InstructionSet(per_site={f"site{i}.com": ["rule"]}))
        store.merge(InstructionSet(per_site={"site0.com": ["another rule"]}))
        store.merge(InstructionSet(per_site={"new.com": ["rule"]}))
        assert len(store.sites) == MAX_SITES
        assert "site1.com" not in store.sites
        assert "site0.com" in store.sites
        assert store.sites[-1] == "new.com"

    def test_empty_site_updates_ignored(self):
        store = InstructionStore()
        store.merge(InstructionSet(per_site={"a.com": [], "": ["x"]}))
        assert store.sites == []
        assert store.version == 0

    def test_snapshot_is_a_copy(self):
        store = InstructionStore(general=["A"])
        snapshot = store.snapshot()
        snapshot.general.append("B")
        assert store.general == ["A"]

    def test_set_general(self):
        store = InstructionStore(general=["A"])
        store.set_general(["X", "x", "Y"])
        assert store.general == ["X", "Y"]
        assert store.version == 1

    def test_render(self):
        store = InstructionStore(general=["Be brief"], per_site={"example.com": ["Use the top search"]})
        text = store.render("https://www.example.com/a")
        assert text.startswith(GENERAL_HEADING)
        assert "- Be brief" in text
        assert "### SITE SPECIAL INSTRUCTIONS (example.com)\n- Use the top search" in text
        assert "SITE SPECIAL" not in store.render("https://elsewhere.org")

    def test_render_empty(self):
        assert InstructionStore().render("https://a.com") == ""


class TestPersistence:
    def test_save_and_load(self, temp_dir):
        path = temp_dir / "nested" / "instructions.json"
        store = InstructionStore()
        store.merge(InstructionSet(general=["A"], per_site={"a.com": ["B"]}))
        store.save(path)

        data = json.loads(path.read_text(encoding="utf-8"))
        assert data == {"version": 1, "general": ["A"], "perSite": {"a.com": ["B"]}}

        loaded = InstructionStore.load(path)
        assert loaded.general == ["A"]
        assert loaded.rules_for("a.com") == ["B"]
        assert loaded.version == 1

    def test_missing_file_gives_empty_store(self, temp_dir):
        store = InstructionStore.load(temp_dir / "absent.json")
        assert store.snapshot().is_empty()

    def test_corrupt_file_gives_empty_store(self, temp_dir):
        path = temp_dir / "bad.json"
        path.write_text("{not json", encoding="utf-8")
        assert InstructionStore.load(path).snapshot().is_empty()
