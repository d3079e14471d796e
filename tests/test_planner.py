from __future__ import annotations

import itertools
import random

import pytest

from conftest import make_step
from deploy_flow.errors import (
    CycleError,
    DuplicateStepError,
    UnknownDependencyError,
    UnknownStepKindError,
    ValidationError,
)
from deploy_flow.models import GlobalContext, RetryPolicy
from deploy_flow.planner import compile_plan, execution_waves, render_plan


def _assert_topological(plan) -> None:  # noqa: ANN001
    position = {sid: i for i, sid in enumerate(plan.order)}
    for sid, step in plan.steps.items():
        for dep in step.depends_on:
            assert position[dep] < position[sid], (dep, sid, plan.order)


def test_deployment_chain_orders_dependencies_first() -> None:
    steps = [
        make_step("admin-bootstrap", "migrate"),
        make_step("migrate", "deploy-app"),
        make_step("deploy-app", "create-secret", "import-image"),
        make_step("create-secret", "provision-db"),
        make_step("import-image"),
        make_step("provision-db"),
    ]

    plan = compile_plan(steps)

    _assert_topological(plan)
    assert set(plan.order) == {s.id for s in steps}
    assert plan.closures["admin-bootstrap"] == frozenset(
        {"migrate", "deploy-app", "create-secret", "import-image", "provision-db"}
    )
    assert plan.closures["provision-db"] == frozenset()
    assert plan.dependents["provision-db"] == ("create-secret",)


def test_random_acyclic_declarations_produce_consistent_order() -> None:
    rng = random.Random(7)
    for _ in range(50):
        n = rng.randint(1, 12)
        ids = [f"s{i}" for i in range(n)]
        steps = []
        for i, sid in enumerate(ids):
            # 앞쪽 스텝에만 의존하게 만들면 항상 DAG 가 된다.
            deps = [d for d in ids[:i] if rng.random() < 0.3]
            steps.append(make_step(sid, *deps))
        rng.shuffle(steps)

        plan = compile_plan(steps)

        _assert_topological(plan)


def test_cycle_is_rejected_with_path() -> None:
    steps = [
        make_step("a", "c"),
        make_step("b", "a"),
        make_step("c", "b"),
        make_step("d"),
    ]

    with pytest.raises(CycleError) as excinfo:
        compile_plan(steps)

    cycle = excinfo.value.cycle
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"a", "b", "c"}
    assert isinstance(excinfo.value, ValidationError)


def test_self_dependency_is_a_cycle() -> None:
    with pytest.raises(CycleError):
        compile_plan([make_step("a", "a")])


def test_every_cyclic_permutation_is_rejected() -> None:
    for order in itertools.permutations(["x", "y", "z"]):
        steps = {
            "x": make_step("x", "y"),
            "y": make_step("y", "z"),
            "z": make_step("z", "x"),
        }
        with pytest.raises(CycleError):
            compile_plan([steps[sid] for sid in order])


def test_unknown_dependency_is_rejected() -> None:
    with pytest.raises(UnknownDependencyError) as excinfo:
        compile_plan([make_step("deploy-app", "provision-db")])

    assert excinfo.value.step_id == "deploy-app"
    assert excinfo.value.dependency == "provision-db"


def test_duplicate_step_is_rejected() -> None:
    with pytest.raises(DuplicateStepError):
        compile_plan([make_step("a"), make_step("a")])


def test_unknown_kind_is_rejected_when_kinds_are_known() -> None:
    with pytest.raises(UnknownStepKindError):
        compile_plan([make_step("a", kind="teleport")], known_kinds=["fake"])


def test_plan_id_is_stable_and_ignores_declaration_order_and_retry_knobs() -> None:
    first = compile_plan([make_step("a"), make_step("b", "a")])
    second = compile_plan([make_step("b", "a"), make_step("a")])
    tuned = compile_plan([make_step("a", retry=RetryPolicy(max_attempts=5)), make_step("b", "a", timeout_ms=1000)])
    changed = compile_plan([make_step("a", params={"size": "large"}), make_step("b", "a")])

    assert first.plan_id == second.plan_id == tuned.plan_id
    assert changed.plan_id != first.plan_id


def test_plan_id_changes_with_global_context() -> None:
    steps = [make_step("deploy", kind="command", params={"command": ["echo", "${region}"]})]

    korea = compile_plan(steps, GlobalContext(region="koreacentral"))
    europe = compile_plan(steps, GlobalContext(region="westeurope"))
    tagged = compile_plan(steps, GlobalContext(region="koreacentral", extra=(("team", "payments"),)))

    assert korea.plan_id != europe.plan_id
    assert korea.plan_id != tagged.plan_id
    assert compile_plan(steps).plan_id == compile_plan(steps, GlobalContext()).plan_id


def test_idempotency_key_is_deterministic() -> None:
    a1 = make_step("a", params={"sku": "B1ms", "tier": "Burstable"})
    a2 = make_step("a", params={"tier": "Burstable", "sku": "B1ms"})
    a3 = make_step("a", params={"sku": "B2s"})

    assert a1.idempotency_key == a2.idempotency_key
    assert a1.idempotency_key != a3.idempotency_key


def test_execution_waves_group_independent_steps() -> None:
    plan = compile_plan([make_step("a"), make_step("b", "a"), make_step("c", "a"), make_step("d", "b", "c")])

    assert execution_waves(plan) == [["a"], ["b", "c"], ["d"]]


def test_render_plan_lists_steps_and_order() -> None:
    plan = compile_plan(
        [make_step("provision-db"), make_step("create-secret", "provision-db", secrets=("db-password",))],
        GlobalContext(region="koreacentral", environment="prod"),
    )

    text = render_plan(plan)

    assert plan.plan_id in text
    assert "- region: koreacentral" in text
    assert "- create-secret [fake] <- provision-db" in text
    assert "secrets: db-password" in text
    assert "1. provision-db" in text
    assert "2. create-secret" in text
