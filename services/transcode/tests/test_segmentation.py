import pytest

from services.transcode.domain.segmentation import (
    HybridSegmentation,
    UniformSegmentation,
    plan_segments,
    round_half_up,
    uniform_segment_seconds,
)


def test_hybrid_plan_stops_at_source_duration():
    policy = HybridSegmentation(
        initial_segment_seconds=10,
        initial_segment_count=3,
        subsequent_segment_seconds=20,
    )

    plan = plan_segments(25.0, 30.0, policy)

    assert plan.boundaries == (10.0, 20.0)
    assert plan.gop_size == 600
    assert plan.min_keyframe_interval == 300


def test_hybrid_plan_switches_to_subsequent_cadence():
    plan = plan_segments(95.0, 24.0, HybridSegmentation())

    assert plan.boundaries == (10.0, 20.0, 30.0, 50.0, 70.0, 90.0)
    assert plan.target_segment_seconds == 10.0


def test_hybrid_plan_includes_last_initial_multiple_on_phase_end():
    plan = plan_segments(31.0, 24.0, HybridSegmentation())

    assert plan.boundaries == (10.0, 20.0, 30.0)


def test_hybrid_without_initial_phase_uses_subsequent_cadence_only():
    policy = HybridSegmentation(initial_segment_count=0)

    plan = plan_segments(65.0, 24.0, policy)

    assert plan.boundaries == (20.0, 40.0, 60.0)
    assert plan.target_segment_seconds == 20.0


@pytest.mark.parametrize(
    "policy", [UniformSegmentation(), HybridSegmentation()], ids=["uniform", "hybrid"]
)
@pytest.mark.parametrize("duration", [0.0, -3.0])
def test_non_positive_duration_yields_single_segment(policy, duration):
    plan = plan_segments(duration, 25.0, policy)

    assert plan.boundaries == ()
    assert plan.keyframe_times() == (0.0,)


@pytest.mark.parametrize(
    "duration,fps,policy",
    [
        (3600.0, 29.97, UniformSegmentation()),
        (601.5, 25.0, UniformSegmentation()),
        (59.99, 60.0, UniformSegmentation(base_segment_seconds=6)),
        (333.3, 23.976, HybridSegmentation()),
        (12.0, 30.0, HybridSegmentation(initial_segment_seconds=4, initial_segment_count=5)),
    ],
)
def test_boundaries_strictly_increase_and_stay_inside_duration(duration, fps, policy):
    plan = plan_segments(duration, fps, policy)

    assert all(b < duration for b in plan.boundaries)
    assert all(a < b for a, b in zip(plan.boundaries, plan.boundaries[1:]))
    assert plan.boundaries[0] > 0


@pytest.mark.parametrize(
    "duration,expected",
    [(1801.0, 2.0), (1800.0, 4.0), (601.0, 4.0), (600.0, 6.0), (30.0, 6.0)],
)
def test_uniform_duration_tiers(duration, expected):
    assert uniform_segment_seconds(duration, 6.0) == expected


def test_uniform_gop_follows_frame_rate():
    plan = plan_segments(120.0, 30.0, UniformSegmentation(base_segment_seconds=6))

    assert plan.gop_size == 180
    assert plan.min_keyframe_interval == 180
    assert plan.boundaries[:3] == (6.0, 12.0, 18.0)
    assert plan.boundaries[-1] == 114.0


def test_uniform_gop_has_a_floor_and_default_fps():
    short = plan_segments(4000.0, 5.0, UniformSegmentation())
    unknown_fps = plan_segments(60.0, None, UniformSegmentation())

    assert short.gop_size == 24
    assert unknown_fps.gop_size == 144


def test_force_keyframe_expression_starts_at_zero():
    plan = plan_segments(25.0, 24.0, HybridSegmentation())

    assert plan.force_keyframe_expression() == "0.000,10.000,20.000"


def test_round_half_up():
    assert round_half_up(2.5) == 3
    assert round_half_up(179.82) == 180
    assert round_half_up(0.49) == 0


def test_policies_reject_invalid_lengths():
    with pytest.raises(ValueError):
        UniformSegmentation(base_segment_seconds=0)
    with pytest.raises(ValueError):
        HybridSegmentation(initial_segment_count=-1)


def test_long_uniform_plan_uses_a_constant_size_keyframe_rule():
    plan = plan_segments(8 * 3600.0, 30.0, UniformSegmentation())

    assert len(plan.boundaries) > 10000
    assert plan.force_keyframe_expression() == "expr:gte(t,n_forced*2)"


def test_long_hybrid_plan_uses_a_piecewise_keyframe_rule():
    plan = plan_segments(10 * 3600.0, 24.0, HybridSegmentation())

    assert plan.force_keyframe_expression() == (
        "expr:if(lt(t,30),gte(t,n_forced*10),gte(t,30+(n_forced-3)*20))"
    )


def test_hybrid_rule_without_initial_phase():
    plan = plan_segments(
        10 * 3600.0, 24.0, HybridSegmentation(initial_segment_count=0)
    )

    assert plan.force_keyframe_expression() == "expr:gte(t,0+(n_forced-0)*20)"


@pytest.mark.parametrize(
    "factory",
    [
        lambda: UniformSegmentation(base_segment_seconds=0.0004),
        lambda: HybridSegmentation(initial_segment_seconds=0.0005),
        lambda: HybridSegmentation(subsequent_segment_seconds=0.0009),
    ],
)
def test_policies_reject_sub_millisecond_segments(factory):
    with pytest.raises(ValueError):
        factory()


def test_millisecond_segments_keep_boundaries_strictly_increasing():
    plan = plan_segments(0.0045, 24.0, UniformSegmentation(base_segment_seconds=0.001))

    assert plan.boundaries == (0.001, 0.002, 0.003, 0.004)
