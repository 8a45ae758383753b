import json

import pytest

from governance_runtime.artifacts.intent_mapping import (
    INTENT_MAPPING_ARTIFACT_TYPE,
    IntentMappingError,
    create_intent_mapping_artifact,
    create_target_id,
    normalize_for_search,
    tokenize_for_search,
)

from .conftest import RELEASE_MODULE, make_snapshot


def test_single_symbol_target_continues(pipeline):
    artifact = pipeline.mapping()

    assert artifact["artifact_type"] == INTENT_MAPPING_ARTIFACT_TYPE
    assert artifact["artifact_id"].startswith("imap_")
    assert artifact["run_id"] == "run-test-1"
    assert artifact["inputs"] == [
        {
            "artifact_id": "wsnap_0123456789ab",
            "artifact_type": "ls.m2.workspace_snapshot",
            "schema_version": "1.0.0",
        }
    ]
    assert artifact["trace"] == {"intent_source": "user_prompt", "extraction_methods": ["ast_symbol_lookup"]}

    payload = artifact["payload"]
    assert payload["decision"] == "continue"
    assert payload["reason_code"] == "ok"
    assert payload["reason_detail"] == "Single high-confidence target selected"
    (candidate,) = payload["candidates"]
    assert candidate["path"] == "src/release.py"
    assert candidate["symbol_path"] == "function:publish_release"
    assert candidate["confidence"] == 0.91
    assert candidate["provenance"]["method"] == "ast_symbol_lookup"
    assert candidate["provenance"]["range"]["start_line"] == 1
    assert "exact symbol-name hit" in candidate["rationale"]


def test_mapping_is_deterministic(pipeline):
    first = pipeline.mapping()
    second = pipeline.mapping()

    assert json.dumps(first) == json.dumps(second)


def test_equal_candidates_are_ambiguous(tmp_path, fixed_now):
    for package in ("a", "b"):
        (tmp_path / package).mkdir()
        (tmp_path / package / "release.py").write_text(RELEASE_MODULE, encoding="utf-8")

    artifact = create_intent_mapping_artifact(
        make_snapshot(tmp_path), "update publish_release function", now=fixed_now
    )

    payload = artifact["payload"]
    assert payload["decision"] == "escalate"
    assert payload["reason_code"] == "mapping_ambiguous"
    assert [candidate["path"] for candidate in payload["candidates"]] == ["a/release.py", "b/release.py"]
    assert payload["reason_detail"] == (
        "Multiple high-confidence targets remain within ambiguity gap 0.0500: "
        "a/release.py#function:publish_release, b/release.py#function:publish_release."
    )


def test_weak_text_match_is_low_confidence(tmp_path, fixed_now):
    (tmp_path / "docs").mkdir()
    (tmp_path / "docs" / "notes.txt").write_text("rotate credentials quarterly\n", encoding="utf-8")

    artifact = create_intent_mapping_artifact(make_snapshot(tmp_path), "rotate keys monthly", now=fixed_now)

    payload = artifact["payload"]
    assert payload["decision"] == "escalate"
    assert payload["reason_code"] == "mapping_low_confidence"
    assert payload["candidates"][0]["confidence"] == 0.3267
    assert payload["candidates"][0]["provenance"]["range"] == {
        "start_line": 1,
        "start_column": 1,
        "end_line": 1,
        "end_column": 29,
    }
    assert payload["reason_detail"] == "Top mapping candidate scored 0.3267 below minimum confidence 0.7500."
    assert artifact["trace"]["extraction_methods"] == ["text_match"]


def test_lower_threshold_accepts_weak_match(tmp_path):
    (tmp_path / "notes.txt").write_text("rotate credentials quarterly\n", encoding="utf-8")

    artifact = create_intent_mapping_artifact(make_snapshot(tmp_path), "rotate keys monthly", min_confidence=0.3)

    assert artifact["payload"]["decision"] == "continue"


def test_unrelated_intent_stops(pipeline):
    payload = pipeline.mapping(intent="zebra unicorn")["payload"]

    assert payload["decision"] == "stop"
    assert payload["reason_code"] == "unsupported_input"
    assert payload["candidates"] == []
    assert payload["alternatives"] == []


def test_ignored_paths_from_snapshot_are_respected(tmp_path, fixed_now):
    (tmp_path / "vendor").mkdir()
    (tmp_path / "vendor" / "release.py").write_text(RELEASE_MODULE, encoding="utf-8")

    artifact = create_intent_mapping_artifact(
        make_snapshot(tmp_path, ignored_paths=["vendor/**"]), "update publish_release function", now=fixed_now
    )

    assert artifact["payload"]["reason_code"] == "unsupported_input"


def test_ls_declarations_are_mapped(tmp_path):
    (tmp_path / "release.ls").write_text(
        'goal "Ship release"\ncapability publish "Publish artifacts"\ncheck smoke "Run smoke tests"\n',
        encoding="utf-8",
    )

    payload = create_intent_mapping_artifact(make_snapshot(tmp_path), "run smoke check")["payload"]

    assert payload["candidates"][0]["symbol_path"] == "check:smoke"


def test_run_id_factory_overrides_snapshot_run(pipeline):
    assert pipeline.mapping(run_id_factory=lambda: "run-override")["run_id"] == "run-override"


@pytest.mark.parametrize(
    "kwargs, code",
    [
        ({"intent": "  "}, "INVALID_INTENT"),
        ({"intent": "x", "intent_source": " "}, "INVALID_INTENT_SOURCE"),
        ({"intent": "x", "min_confidence": 1.5}, "INVALID_OPTIONS"),
        ({"intent": "x", "ambiguity_gap": float("nan")}, "INVALID_OPTIONS"),
        ({"intent": "x", "max_alternatives": 51}, "INVALID_OPTIONS"),
        ({"intent": "x", "max_alternatives": True}, "INVALID_OPTIONS"),
    ],
)
def test_invalid_options(release_workspace, kwargs, code):
    with pytest.raises(IntentMappingError) as exc_info:
        create_intent_mapping_artifact(make_snapshot(release_workspace), **kwargs)

    assert exc_info.value.code == code


def test_snapshot_type_is_checked(release_workspace):
    snapshot = make_snapshot(release_workspace)
    snapshot["artifact_type"] = "ls.m2.intent_mapping"

    with pytest.raises(IntentMappingError, match="requires ls.m2.workspace_snapshot input") as exc_info:
        create_intent_mapping_artifact(snapshot, "x")

    assert exc_info.value.code == "INVALID_WORKSPACE_SNAPSHOT"


def test_snapshot_root_must_exist(tmp_path):
    with pytest.raises(IntentMappingError) as exc_info:
        create_intent_mapping_artifact(make_snapshot(tmp_path / "gone"), "x")

    assert exc_info.value.code == "WORKSPACE_ROOT_UNREADABLE"


def test_search_normalization():
    assert normalize_for_search("Update publish_release-Function!") == "update publish release function"
    assert tokenize_for_search("Add the release to a queue") == ["add", "queue", "release"]


def test_target_ids_are_distinct_after_sanitizing():
    first = create_target_id("src/a b.py", None)
    second = create_target_id("src/a_b.py", None)

    assert first.startswith("src/a_b.py#file_")
    assert first != second


def test_property_and_setter_get_distinct_target_ids(tmp_path, fixed_now):
    (tmp_path / "box.py").write_text(
        "class Box:\n"
        "    @property\n"
        "    def width(self):\n"
        "        return self._width\n"
        "\n"
        "    @width.setter\n"
        "    def width(self, value):\n"
        "        self._width = value\n",
        encoding="utf-8",
    )

    payload = create_intent_mapping_artifact(make_snapshot(tmp_path), "update Box width", now=fixed_now)["payload"]

    ids = [candidate["target_id"] for candidate in payload["candidates"]]
    assert len(ids) == len(set(ids))
    widths = [c for c in payload["candidates"] if c["symbol_path"] == "function:Box.width"]
    assert len(widths) == 2
    assert sorted(c["provenance"]["range"]["start_line"] for c in widths) == [3, 7]
    assert widths[0]["target_id"].startswith("box.py#function:Box.width@L")
