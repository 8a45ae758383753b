import pytest

from governance_runtime.artifacts.envelope import ArtifactStore
from governance_runtime.artifacts.pr_bundle import (
    PLACEHOLDER_RISK,
    PR_BUNDLE_ARTIFACT_TYPE,
    READINESS_SECTIONS,
    READY_DETAIL,
    PrBundleError,
    create_pr_bundle_artifact,
    lineage_from_store,
)

from .conftest import PASSING_RESULTS


@pytest.fixture
def chain(pipeline):
    mapping = pipeline.mapping()
    plan = pipeline.plan(mapping)
    run = pipeline.patch_run(plan)
    return {
        "workspace_snapshot": pipeline.snapshot,
        "intent_mapping": mapping,
        "safe_diff_plan": plan,
        "patch_run": run,
    }


def bundle(chain, fixed_now, **kwargs):
    lineage = {key: chain[key] for key in ("workspace_snapshot", "intent_mapping", "safe_diff_plan")}
    kwargs.setdefault("lineage", lineage)
    return create_pr_bundle_artifact(chain["patch_run"], now=fixed_now, **kwargs)


def test_complete_bundle_is_ready(chain, fixed_now):
    artifact = bundle(chain, fixed_now)

    assert artifact["artifact_type"] == PR_BUNDLE_ARTIFACT_TYPE
    assert artifact["artifact_id"].startswith("prb_")
    assert artifact["run_id"] == "run-test-1"
    assert [ref["artifact_type"] for ref in artifact["inputs"]] == [
        "ls.m2.workspace_snapshot",
        "ls.m2.intent_mapping",
        "ls.m2.safe_diff_plan",
        "ls.m2.patch_run",
    ]
    assert artifact["trace"]["boundary_mode"] == "artifact_only"

    payload = artifact["payload"]
    assert list(payload) == [
        "summary",
        "rationale",
        "patch",
        "risk_tradeoffs",
        "verification_evidence_ref",
        "verification",
        "rollback",
        "traceability",
        "readiness",
    ]
    assert payload["summary"] == "update publish_release function"
    assert payload["patch"]["digest"] == chain["patch_run"]["payload"]["patch_digest"]
    assert payload["verification_evidence_ref"] == chain["patch_run"]["artifact_id"]
    assert payload["risk_tradeoffs"] == [PLACEHOLDER_RISK]
    assert payload["traceability"]["lineage_complete"] is True
    assert payload["traceability"]["diff_plan_edits"][0]["path"] == "src/release.py"

    readiness = payload["readiness"]
    assert readiness["decision"] == "continue"
    assert readiness["reason_code"] == "ok"
    assert readiness["reason_detail"] == READY_DETAIL
    assert readiness["missing_sections"] == []
    assert set(readiness["required_sections"]) == set(READINESS_SECTIONS)


def test_rollback_package_reverses_plan(chain, fixed_now):
    rollback = bundle(chain, fixed_now)["payload"]["rollback"]

    assert rollback["strategy"] == "reverse_patch"
    assert rollback["supported"] is True
    assert rollback["package_ref"] == "rollback_" + rollback["package"]["digest"][7:19]
    assert "+__ls_m2_pr_bundle_rollback_after__ symbol:function:publish_release" in rollback["package"]["content"]
    assert len(rollback["instructions"]) == 4
    assert chain["safe_diff_plan"]["artifact_id"] in rollback["instructions"][1]


def test_missing_lineage_stops_listing_sections(chain, fixed_now):
    artifact = bundle(chain, fixed_now, lineage=None)

    readiness = artifact["payload"]["readiness"]
    assert readiness["decision"] == "stop"
    assert readiness["reason_code"] == "rollback_unavailable"
    assert readiness["missing_sections"] == ["rollback_package", "rollback_instructions", "lineage_trace_complete"]
    assert readiness["reason_detail"] == (
        "PR-equivalent bundle is not ready; missing required sections: "
        "rollback_package, rollback_instructions, lineage_trace_complete."
    )
    assert artifact["payload"]["rollback"]["supported"] is False
    assert artifact["payload"]["summary"] == f"PR-equivalent bundle for patch run {chain['patch_run']['artifact_id']}"
    assert artifact["payload"]["risk_tradeoffs"][-1].startswith("Lineage trace is incomplete")


def test_partial_lineage_is_incomplete(chain, fixed_now):
    lineage = {"intent_mapping": chain["intent_mapping"], "safe_diff_plan": chain["safe_diff_plan"]}

    readiness = bundle(chain, fixed_now, lineage=lineage)["payload"]["readiness"]

    assert readiness["decision"] == "stop"
    assert readiness["reason_code"] == "bundle_incomplete"
    assert readiness["missing_sections"] == ["lineage_trace_complete"]


def test_failing_verification_stops(pipeline, fixed_now):
    results = [dict(result) for result in PASSING_RESULTS]
    results[2]["status"] = "fail"
    mapping = pipeline.mapping()
    plan = pipeline.plan(mapping)
    run = pipeline.patch_run(plan, verification_results=results)

    artifact = create_pr_bundle_artifact(
        run,
        lineage={"workspace_snapshot": pipeline.snapshot, "intent_mapping": mapping, "safe_diff_plan": plan},
        now=fixed_now,
    )

    payload = artifact["payload"]
    assert payload["verification"]["all_required_passed"] is False
    assert payload["readiness"]["decision"] == "stop"
    assert payload["readiness"]["reason_code"] == "verification_failed"
    assert payload["readiness"]["missing_sections"] == ["verification_results"]
    assert payload["readiness"]["reason_detail"].endswith(" Upstream patch run outcome=stop/verification_failed.")


def test_escalated_patch_run_summary_and_risks(pipeline, fixed_now):
    mapping = pipeline.mapping()
    plan = pipeline.plan(mapping)
    run = pipeline.patch_run(plan, policy_sensitive_path_patterns=["src/**"])
    assert run["payload"]["decision"] == "escalate"

    payload = create_pr_bundle_artifact(
        run,
        lineage={"workspace_snapshot": pipeline.snapshot, "intent_mapping": mapping, "safe_diff_plan": plan},
        now=fixed_now,
    )["payload"]

    assert payload["summary"].endswith("(human review required)")
    assert "policy-sensitive paths" in payload["risk_tradeoffs"][1]
    readiness = payload["readiness"]
    assert readiness["missing_sections"] == []
    assert readiness["decision"] == "escalate"
    assert readiness["reason_code"] == "policy_blocked"
    assert readiness["reason_detail"].endswith("outcome=escalate/policy_blocked.")


def test_dropping_evidence_ref_blocks_readiness(chain, fixed_now):
    readiness = bundle(chain, fixed_now, verification_evidence_ref=None)["payload"]["readiness"]

    assert readiness["missing_sections"] == ["verification_link"]
    assert readiness["reason_code"] == "bundle_incomplete"


def test_explicit_text_overrides(chain, fixed_now):
    payload = bundle(
        chain,
        fixed_now,
        summary="Tighten release publishing",
        rationale="Callers need tag validation.",
        risk_tradeoffs=["Touches release path", " ", "Touches release path"],
        verification_evidence_ref="ci://pipeline/42",
        rollback={"package_ref": "rollback_manual", "instructions": ["Revert commit"]},
    )["payload"]

    assert payload["summary"] == "Tighten release publishing"
    assert payload["rationale"] == "Callers need tag validation."
    assert payload["risk_tradeoffs"] == ["Touches release path"]
    assert payload["verification_evidence_ref"] == "ci://pipeline/42"
    assert payload["rollback"]["package_ref"] == "rollback_manual"
    assert payload["rollback"]["instructions"] == ["Revert commit"]


def test_rollback_can_be_disabled(chain, fixed_now):
    payload = bundle(chain, fixed_now, rollback={"supported": False})["payload"]

    assert payload["rollback"]["package"] is None
    assert payload["readiness"]["reason_code"] == "rollback_unavailable"


def test_bundle_is_deterministic(chain, fixed_now):
    assert bundle(chain, fixed_now) == bundle(chain, fixed_now)


def test_lineage_run_ids_must_match(chain, fixed_now):
    snapshot = dict(chain["workspace_snapshot"], run_id="run-other")

    with pytest.raises(PrBundleError, match="must share a run_id with patch run; observed: run-test-1, run-other") as exc_info:
        bundle(
            chain,
            fixed_now,
            lineage={
                "workspace_snapshot": snapshot,
                "intent_mapping": chain["intent_mapping"],
                "safe_diff_plan": chain["safe_diff_plan"],
            },
        )

    assert exc_info.value.code == "INVALID_LINEAGE"


def test_lineage_plan_must_match_patch_run(pipeline, chain, fixed_now):
    other_plan = pipeline.plan(planned_edits=[{"path": "src/other.py"}])

    with pytest.raises(PrBundleError, match="lineage.safeDiffPlan does not match patch run inputs reference"):
        bundle(chain, fixed_now, lineage={"safe_diff_plan": other_plan})


def test_tampered_patch_digest_is_rejected(chain, fixed_now):
    chain["patch_run"]["payload"]["patch"]["content"] += "tampered\n"

    with pytest.raises(PrBundleError, match="patch_digest does not match") as exc_info:
        bundle(chain, fixed_now)

    assert exc_info.value.code == "INVALID_PATCH_RUN"


@pytest.mark.parametrize(
    "kwargs",
    [
        {"rollback": {"strategy": "git_revert"}},
        {"rollback": {"instructions": "revert"}},
        {"risk_tradeoffs": "risky"},
        {"lineage": ["not", "a", "dict"]},
    ],
)
def test_invalid_options(chain, fixed_now, kwargs):
    with pytest.raises(PrBundleError) as exc_info:
        bundle(chain, fixed_now, **kwargs)

    assert exc_info.value.code == "INVALID_OPTIONS"


def test_lineage_from_store(chain, fixed_now):
    store = ArtifactStore()
    for key in ("workspace_snapshot", "intent_mapping", "safe_diff_plan", "patch_run"):
        store.put(chain[key])

    lineage = lineage_from_store(store, chain["patch_run"]["artifact_id"])

    assert set(lineage) == {"workspace_snapshot", "intent_mapping", "safe_diff_plan"}
    artifact = create_pr_bundle_artifact(store.get(chain["patch_run"]["artifact_id"]), lineage=lineage, now=fixed_now)
    assert artifact == bundle(chain, fixed_now)
