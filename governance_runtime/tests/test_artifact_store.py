import pytest

from governance_runtime.artifacts.envelope import (
    ArtifactStageError,
    ArtifactStore,
    build_envelope,
    canonical_json,
    dedupe_refs,
    require_envelope,
    resolve_artifact_run_id,
)
from governance_runtime.artifacts.globs import (
    collect_matching_paths,
    is_outside_workspace,
    matches_glob,
    normalize_patterns,
    normalize_relative_path,
)

from .conftest import FIXED_TIMESTAMP


def make_artifact(artifact_id, inputs=(), payload=None):
    return {
        "artifact_type": "test.artifact",
        "schema_version": "1.0.0",
        "artifact_id": artifact_id,
        "run_id": "run-1",
        "produced_at_utc": FIXED_TIMESTAMP,
        "tool_version": "governance-runtime@test",
        "inputs": [
            {"artifact_id": ref, "artifact_type": "test.artifact", "schema_version": "1.0.0"} for ref in inputs
        ],
        "trace": {},
        "payload": payload or {},
    }


def test_envelope_key_order_and_id(fixed_now):
    envelope = build_envelope(
        "test.artifact", "1.0.0", "tst", "abcdef0123456789", "run-1", fixed_now, None, [], {}, {"x": 1}
    )

    assert list(envelope) == [
        "artifact_type",
        "schema_version",
        "artifact_id",
        "run_id",
        "produced_at_utc",
        "tool_version",
        "inputs",
        "trace",
        "payload",
    ]
    assert envelope["artifact_id"] == "tst_abcdef012345"
    assert envelope["produced_at_utc"] == FIXED_TIMESTAMP
    assert envelope["tool_version"] == "governance-runtime@0.1.0"


def test_canonical_json_is_compact_and_ordered():
    assert canonical_json({"b": 1, "a": [1, "é"]}) == '{"b":1,"a":[1,"é"]}'


def test_run_id_prefers_factory_then_upstream():
    assert resolve_artifact_run_id("run-upstream", lambda: "run-factory") == "run-factory"
    assert resolve_artifact_run_id("run-upstream", lambda: "  ") == "run-upstream"
    assert resolve_artifact_run_id(None, None)


def test_dedupe_refs_keeps_first_occurrence():
    ref = {"artifact_id": "a", "artifact_type": "t", "schema_version": "1"}
    assert dedupe_refs([ref, None, dict(ref)]) == [ref]


@pytest.mark.parametrize(
    "artifact, message",
    [
        (None, "requires a test.artifact artifact object"),
        ({**make_artifact("a"), "artifact_type": "other"}, "requires test.artifact input"),
        ({**make_artifact("a"), "schema_version": "2.0.0"}, "requires test.artifact@1.0.0"),
        ({**make_artifact("a"), "run_id": " "}, "missing required envelope fields"),
        ({**make_artifact("a"), "payload": []}, "payload must be an object"),
    ],
)
def test_require_envelope_rejects_malformed_artifacts(artifact, message):
    with pytest.raises(ArtifactStageError, match=message) as exc_info:
        require_envelope(artifact, "test.artifact", "1.0.0", ArtifactStageError, "INVALID_INPUT", "Consumer")

    assert exc_info.value.code == "INVALID_INPUT"


def test_store_put_is_idempotent_and_copies():
    store = ArtifactStore()
    artifact = make_artifact("a", payload={"value": 1})

    ref = store.put(artifact)
    assert store.put(make_artifact("a", payload={"value": 1})) == ref
    assert len(store) == 1
    assert "a" in store

    artifact["payload"]["value"] = 2
    assert store.get("a")["payload"]["value"] == 1

    fetched = store.get("a")
    fetched["payload"]["value"] = 3
    assert store.get("a")["payload"]["value"] == 1


def test_store_rejects_conflicting_content():
    store = ArtifactStore()
    store.put(make_artifact("a", payload={"value": 1}))

    with pytest.raises(ValueError, match="already stored with different content"):
        store.put(make_artifact("a", payload={"value": 2}))


def test_store_get_unknown_raises_key_error():
    with pytest.raises(KeyError):
        ArtifactStore().get("missing")


def test_store_lineage_is_nearest_first():
    store = ArtifactStore()
    store.put(make_artifact("snapshot"))
    store.put(make_artifact("mapping", inputs=["snapshot"]))
    store.put(make_artifact("plan", inputs=["mapping", "snapshot"]))

    assert [ref["artifact_id"] for ref in store.lineage("plan")] == ["mapping", "snapshot"]
    assert store.ids() == ["snapshot", "mapping", "plan"]
    assert store.lineage("unknown") == []


@pytest.mark.parametrize(
    "path, pattern, expected",
    [
        (".github/workflows/ci.yml", ".github/workflows/**", True),
        (".github/workflows", ".github/workflows/**", True),
        ("src/app.py", "src/*.py", True),
        ("src/pkg/app.py", "src/*.py", False),
        ("src/pkg/app.py", "src/**/*.py", True),
        ("secrets.env", "*.env", True),
        ("config/secrets.env", "*.env", False),
    ],
)
def test_matches_glob(path, pattern, expected):
    assert matches_glob(path, pattern) is expected


def test_collect_matching_paths_sorted_unique():
    paths = ["b/x.py", "a/y.py", "b/x.py", "c.txt"]
    assert collect_matching_paths(paths, ["**/*.py"]) == ["a/y.py", "b/x.py"]


@pytest.mark.parametrize(
    "value, expected",
    [
        ("./src//app.py", "src/app.py"),
        ("src\\pkg\\app.py", "src/pkg/app.py"),
        ("src/../README.md", "README.md"),
        (".", "."),
        ("  ", None),
    ],
)
def test_normalize_relative_path(value, expected):
    assert normalize_relative_path(value) == expected


def test_outside_workspace():
    assert is_outside_workspace("/etc/passwd")
    assert is_outside_workspace("C:/Windows")
    assert is_outside_workspace("../sibling")
    assert not is_outside_workspace("src/..hidden")


def test_normalize_patterns():
    assert normalize_patterns(None, ["a/**"], ValueError, "patterns") == ["a/**"]
    assert normalize_patterns(["b\\**", "a/**", "a/**"], [], ValueError, "patterns") == ["a/**", "b/**"]
    with pytest.raises(ValueError, match="patterns must be an array"):
        normalize_patterns("a/**", [], ValueError, "patterns")
    with pytest.raises(ValueError, match="only non-empty strings"):
        normalize_patterns(["a/**", ""], [], ValueError, "patterns")
