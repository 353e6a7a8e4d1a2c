import random
import sys
from pathlib import Path

import pytest

from redline_runner.core.config import ConfigError, StopConditionsConfig
from redline_runner.core.stop import (
    AllOf,
    AllTestsPass,
    AnyOf,
    CustomScript,
    FailureStreak,
    FileContains,
    FileCreated,
    MaxDuration,
    MaxIterations,
    Never,
    NoProgress,
    Not,
    OnError,
    OutputPattern,
    SpecificTestsPass,
    StopConditionEvaluator,
    StopContext,
    UserSignal,
    leaves,
    parse_condition,
    parse_conditions,
    priority,
)


def _evaluator(*normal, **kwargs) -> StopConditionEvaluator:
    return StopConditionEvaluator(normal=list(normal), **kwargs)


@pytest.mark.asyncio
@pytest.mark.parametrize("iteration", [0, 1, 4, 5, 6, 12])
async def test_max_iterations_met_at_limit_with_clamped_progress(iteration):
    evaluator = _evaluator(MaxIterations(5))

    result = await evaluator.evaluate(StopContext(iteration=iteration))

    assert result.should_stop is (iteration >= 5)
    leaf = result.condition_results[0]
    assert leaf.met is (iteration >= 5)
    assert leaf.progress == min(1.0, iteration / 5)
    assert evaluator.overall_progress() == min(1.0, iteration / 5)


@pytest.mark.asyncio
async def test_any_output_pattern_or_duration_triggers_on_output():
    condition = AnyOf((OutputPattern("DONE"), MaxDuration(3600)))
    evaluator = _evaluator(condition)

    result = await evaluator.evaluate(
        StopContext(recent_output="all work DONE here", elapsed_seconds=10)
    )

    assert result.should_stop is True
    assert result.triggered_by == OutputPattern("DONE")
    assert result.trigger == condition
    assert result.is_success is None
    assert "DONE" in result.reason


@pytest.mark.asyncio
async def test_pools_classify_outcome():
    evaluator = StopConditionEvaluator(
        normal=[MaxIterations(100)],
        success=[AllTestsPass()],
        failure=[FailureStreak(3)],
    )

    success = await evaluator.evaluate(
        StopContext(iteration=2, failing_tests=0, total_tests=12)
    )
    failure = await evaluator.evaluate(
        StopContext(iteration=2, consecutive_failures=3, failing_tests=1, total_tests=12)
    )
    neither = await evaluator.evaluate(
        StopContext(iteration=2, failing_tests=1, total_tests=12)
    )

    assert success.should_stop and success.is_success is True
    assert success.triggered_by == AllTestsPass()
    assert failure.should_stop and failure.is_success is False
    assert failure.triggered_by == FailureStreak(3)
    assert not neither.should_stop
    assert neither.triggered_by is None


@pytest.mark.asyncio
async def test_priority_orders_across_pools():
    # OnError sits in the failure pool but outranks the normal-pool limit.
    evaluator = StopConditionEvaluator(
        normal=[MaxIterations(1)],
        failure=[OnError()],
    )

    result = await evaluator.evaluate(StopContext(iteration=5, last_error="boom"))

    assert result.triggered_by == OnError()
    assert result.is_success is False
    assert [type(r.condition) for r in result.condition_results] == [OnError]


def test_priority_ranks():
    assert priority(OnError()) < priority(MaxIterations(1))
    assert priority(MaxIterations(1)) < priority(NoProgress(2))
    assert priority(NoProgress(2)) < priority(AllTestsPass())
    assert priority(AllTestsPass()) < priority(FileCreated("x"))
    assert priority(FileCreated("x")) < priority(CustomScript("true"))
    assert priority(CustomScript("true")) < priority(AllOf((Never(),)))
    assert priority(AllOf((Never(),))) < priority(Never())


@pytest.mark.asyncio
async def test_all_requires_every_child_and_averages_progress():
    condition = AllOf((MaxIterations(10), OutputPattern("ok")))
    evaluator = _evaluator(condition)

    partial = await evaluator.evaluate(StopContext(iteration=5, recent_output="ok"))
    full = await evaluator.evaluate(StopContext(iteration=10, recent_output="ok"))

    assert not partial.should_stop
    assert partial.condition_results[0].progress == pytest.approx(0.75)
    assert full.should_stop


@pytest.mark.asyncio
async def test_not_inverts_and_discards_progress():
    evaluator = _evaluator(Not(MaxIterations(10)))

    early = await evaluator.evaluate(StopContext(iteration=9))
    late = await evaluator.evaluate(StopContext(iteration=10))

    assert early.should_stop is True
    assert early.condition_results[0].progress == 1.0
    assert late.should_stop is False
    assert late.condition_results[0].progress == 0.0


@pytest.mark.parametrize(
    "condition, context, leaf",
    [
        (
            AnyOf((MaxDuration(3600), OutputPattern("DONE"))),
            StopContext(recent_output="DONE", elapsed_seconds=5),
            OutputPattern("DONE"),
        ),
        (
            AllOf((MaxIterations(3), OutputPattern("ok"))),
            StopContext(iteration=3, recent_output="ok"),
            MaxIterations(3),
        ),
        (
            Not(OnError()),
            StopContext(),
            OnError(),
        ),
        (
            AnyOf((Never(), AllOf((Not(AllOf((OnError(), Never()))), MaxIterations(1))))),
            StopContext(iteration=1),
            OnError(),
        ),
    ],
)
@pytest.mark.asyncio
async def test_composites_report_the_deciding_leaf(condition, context, leaf):
    result = await _evaluator(condition).evaluate(context)

    assert result.should_stop is True
    assert result.triggered_by == leaf
    assert result.trigger == condition
    assert result.condition_results[0].triggered_leaf == leaf


def _random_leaf(rng: random.Random, iteration: int):
    threshold = rng.randint(1, 10)
    return MaxIterations(threshold), iteration >= threshold


def _random_tree(rng: random.Random, iteration: int, depth: int = 0):
    if depth >= 3 or rng.random() < 0.35:
        return _random_leaf(rng, iteration)
    kind = rng.choice(["all", "any", "not"])
    if kind == "not":
        child, met = _random_tree(rng, iteration, depth + 1)
        return Not(child), not met
    children = [_random_tree(rng, iteration, depth + 1) for _ in range(rng.randint(1, 3))]
    conditions = tuple(c for c, _ in children)
    flags = [m for _, m in children]
    if kind == "all":
        return AllOf(conditions), all(flags)
    return AnyOf(conditions), any(flags)


@pytest.mark.asyncio
async def test_random_condition_trees_match_boolean_semantics():
    rng = random.Random(1234)
    for _ in range(200):
        iteration = rng.randint(0, 12)
        tree, expected = _random_tree(rng, iteration)
        evaluator = _evaluator(tree)

        result = await evaluator.evaluate(StopContext(iteration=iteration))

        assert result.should_stop is expected, tree.describe()
        for leaf in leaves(tree):
            assert isinstance(leaf, MaxIterations)


@pytest.mark.asyncio
async def test_specific_tests_pass_tracks_named_tests():
    condition = SpecificTestsPass(("tests/test_a.py::test_one", "tests/test_a.py::test_two"))
    evaluator = _evaluator(condition)

    partial = await evaluator.evaluate(
        StopContext(passed_tests=frozenset({"tests/test_a.py::test_one"}))
    )
    full = await evaluator.evaluate(
        StopContext(
            passed_tests=frozenset(
                {"tests/test_a.py::test_one", "tests/test_a.py::test_two"}
            )
        )
    )

    assert not partial.should_stop
    assert partial.condition_results[0].progress == 0.5
    assert full.should_stop


@pytest.mark.asyncio
async def test_tests_all_pass_needs_results():
    evaluator = _evaluator(AllTestsPass())

    result = await evaluator.evaluate(StopContext())

    assert result.should_stop is False


@pytest.mark.asyncio
async def test_file_conditions(tmp_path: Path):
    evaluator = _evaluator(
        FileContains("NOTES.md", r"status: shipped"),
        cache_ttl_seconds=0,
    )
    context = StopContext(working_dir=tmp_path)

    assert (await evaluator.evaluate(context)).should_stop is False
    (tmp_path / "NOTES.md").write_text("status: drafting\n", encoding="utf-8")
    assert (await evaluator.evaluate(context)).should_stop is False
    (tmp_path / "NOTES.md").write_text("status: shipped\n", encoding="utf-8")
    assert (await evaluator.evaluate(context)).should_stop is True


@pytest.mark.asyncio
async def test_file_checks_are_cached_for_ttl(tmp_path: Path):
    now = [0.0]
    evaluator = _evaluator(
        FileCreated("DONE"), cache_ttl_seconds=5, clock=lambda: now[0]
    )
    context = StopContext(working_dir=tmp_path)

    assert (await evaluator.evaluate(context)).should_stop is False
    (tmp_path / "DONE").write_text("", encoding="utf-8")
    assert (await evaluator.evaluate(context)).should_stop is False

    now[0] = 6.0
    assert (await evaluator.evaluate(context)).should_stop is True

    (tmp_path / "DONE").unlink()
    await evaluator.clear_cache()
    assert (await evaluator.evaluate(context)).should_stop is False


@pytest.mark.asyncio
async def test_custom_script_exit_code(tmp_path: Path):
    ok = CustomScript(f'"{sys.executable}" -c "raise SystemExit(0)"')
    fail = CustomScript(f'"{sys.executable}" -c "raise SystemExit(3)"')
    context = StopContext(working_dir=tmp_path)

    assert (await _evaluator(ok, cache_ttl_seconds=0).evaluate(context)).should_stop
    result = await _evaluator(fail, cache_ttl_seconds=0).evaluate(context)
    assert result.should_stop is False
    assert "exited 3" in result.condition_results[0].reason


@pytest.mark.asyncio
async def test_custom_script_errors_are_not_met(tmp_path: Path):
    condition = CustomScript("true")
    evaluator = _evaluator(condition, cache_ttl_seconds=0)

    result = await evaluator.evaluate(StopContext(working_dir=tmp_path / "missing"))

    assert result.should_stop is False
    assert "evaluation failed" in result.condition_results[0].reason


@pytest.mark.asyncio
async def test_parallel_mode_times_out_slow_conditions(tmp_path: Path):
    slow = CustomScript(f'"{sys.executable}" -c "import time; time.sleep(5)"')
    evaluator = StopConditionEvaluator(
        normal=[slow, MaxIterations(100)],
        parallel=True,
        condition_timeout_seconds=0.2,
        cache_ttl_seconds=0,
    )

    result = await evaluator.evaluate(StopContext(iteration=1, working_dir=tmp_path))

    assert result.should_stop is False
    reasons = {r.condition: r.reason for r in result.condition_results}
    assert "timed out" in reasons[slow]
    assert len(result.condition_results) == 2


@pytest.mark.asyncio
async def test_user_signal_and_never():
    evaluator = _evaluator(Never(), UserSignal())

    idle = await evaluator.evaluate(StopContext())
    signalled = await evaluator.evaluate(StopContext(user_signal=True))

    assert idle.should_stop is False
    assert signalled.triggered_by == UserSignal()


def test_parse_yaml_forms():
    raw = [
        {"max_iterations": 50},
        {"max_duration": 3600},
        "tests_all_pass",
        {"specific_tests_pass": ["tests/test_api.py::test_create"]},
        {"file_contains": {"path": "NOTES.md", "pattern": "done"}},
        {"custom_script": {"command": "make check", "timeout": 30}},
        {"any": [{"output_pattern": "DONE"}, {"not": "on_error"}]},
    ]

    parsed = parse_conditions(raw)

    assert parsed == [
        MaxIterations(50),
        MaxDuration(3600.0),
        AllTestsPass(),
        SpecificTestsPass(("tests/test_api.py::test_create",)),
        FileContains("NOTES.md", "done"),
        CustomScript("make check", 30.0),
        AnyOf((OutputPattern("DONE"), Not(OnError()))),
    ]
    # Frozen values are hashable and usable as cache keys.
    assert len(set(parsed)) == len(parsed)


@pytest.mark.parametrize(
    "raw",
    [
        {"max_iterations": 0},
        {"max_iterations": "ten"},
        {"unknown_kind": 1},
        "bogus",
        {"all": []},
        {"max_iterations": 1, "max_duration": 2},
        {"file_contains": {"path": "x"}},
    ],
)
def test_parse_rejects_invalid(raw):
    with pytest.raises(ConfigError):
        parse_condition(raw)


def test_from_config_builds_pools():
    config = StopConditionsConfig(
        normal=[{"max_iterations": 3}],
        success=["tests_all_pass"],
        failure=[{"failure_streak": 2}],
        parallel=True,
    )

    evaluator = StopConditionEvaluator.from_config(config)

    kinds = [(pool.value, condition) for pool, condition in evaluator.conditions]
    assert kinds == [
        ("normal", MaxIterations(3)),
        ("failure", FailureStreak(2)),
        ("success", AllTestsPass()),
    ]
