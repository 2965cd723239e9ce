import random

import pytest

from psychosis_loop import (
    FALLBACK_PHRASES,
    MAX_TARGET_GENERATIONS,
    MIN_TARGET_GENERATIONS,
    SEED_TEXT,
    NarrativeState,
    acceptance_threshold,
    draw_target_generation_count,
    fallback_phrase,
    madness_increment,
    should_accept,
    tier_multiplier,
)


def test_fresh_state_sits_on_seed():
    state = NarrativeState.create(rng=random.Random(0))

    assert state.full_text == SEED_TEXT + "\n\n"
    assert state.last_good_chunk == ""
    assert state.madness_level == 0
    assert state.generation_count == 0
    assert state.consecutive_failures == 0
    assert state.quality_score == 100
    assert state.coherence_score == 100
    assert MIN_TARGET_GENERATIONS <= state.target_generation_count <= MAX_TARGET_GENERATIONS


def test_reset_discards_progress():
    state = NarrativeState.create(rng=random.Random(0))
    state.record_accept("The fans are loud tonight.", 90)
    state.record_reject()

    state.reset(random.Random(5))

    assert state.full_text == SEED_TEXT + "\n\n"
    assert state.last_good_chunk == ""
    assert state.madness_level == 0
    assert state.generation_count == 0
    assert state.consecutive_failures == 0
    assert state.quality_score == 100


def test_target_draw_stays_in_range():
    rng = random.Random(11)
    draws = [draw_target_generation_count(rng) for _ in range(500)]
    assert min(draws) >= MIN_TARGET_GENERATIONS
    assert max(draws) <= MAX_TARGET_GENERATIONS


@pytest.mark.parametrize("level,expected", [
    (0, 40),
    (30, 30),
    (45, 18.75),
    (50, 15),
    (70, 5),
    (100, 0),
])
def test_acceptance_threshold(level, expected):
    assert acceptance_threshold(level) == pytest.approx(expected)


def test_threshold_never_rises():
    levels = [x / 2 for x in range(201)]
    thresholds = [acceptance_threshold(level) for level in levels]
    assert all(a >= b for a, b in zip(thresholds, thresholds[1:]))
    assert min(thresholds) >= 0


@pytest.mark.parametrize("level,expected", [
    (0, 1.5), (9.9, 1.5), (10, 1.2), (30, 1.0), (50, 0.9), (70, 0.8), (90, 0.7), (100, 0.7),
])
def test_tier_multiplier(level, expected):
    assert tier_multiplier(level) == expected


def test_base_increment_spans_full_range():
    for target in (100, 250, 1000):
        assert madness_increment(30, target) * target == pytest.approx(100)


def test_accept_updates_quality_and_madness(state):
    state.quality_score = 50

    new_level = state.record_accept("The fans are loud tonight.", 100)

    assert state.quality_score == pytest.approx(65)
    assert new_level == pytest.approx(0.75)
    assert state.madness_level == new_level
    assert state.generation_count == 1
    assert state.last_good_chunk == "The fans are loud tonight."
    assert state.full_text.endswith("The fans are loud tonight.\n\n")


def test_accept_clears_failure_streak(state):
    state.record_reject()
    state.record_reject()
    state.record_accept("The fans are loud tonight.", 80)
    assert state.consecutive_failures == 0


def test_madness_caps_at_100(state):
    state.madness_level = 99.9
    assert state.record_accept("The fans are loud tonight.", 10) == 100


def test_full_madness_close_to_target():
    state = NarrativeState.create(rng=random.Random(2))
    target = state.target_generation_count

    for _ in range(target):
        state.record_accept("The fans are loud tonight.", 100)
    assert state.madness_level > 90

    for _ in range(int(target * 0.1) + 1):
        state.record_accept("The fans are loud tonight.", 100)
    assert state.madness_level == 100


def test_madness_is_monotonic(state):
    rng = random.Random(4)
    levels = [state.madness_level]
    for _ in range(300):
        if rng.random() < 0.6:
            state.record_accept("The fans are loud tonight.", rng.uniform(0, 100))
        else:
            state.record_reject()
        levels.append(state.madness_level)
    assert all(a <= b for a, b in zip(levels, levels[1:]))
    assert levels[-1] <= 100


def test_quality_stays_in_range(state):
    for score in (0, 0, 0, 100, 100, 100):
        state.record_accept("The fans are loud tonight.", score)
        assert 0 <= state.quality_score <= 100
    for _ in range(50):
        state.record_reject()
    assert 0 <= state.quality_score <= 100


def test_short_fragment_is_rejected_even_at_high_score(state):
    assert not should_accept(100, 10, "Help.")

    quality = state.quality_score
    state.record_reject()

    assert state.consecutive_failures == 1
    assert state.quality_score == pytest.approx(quality * 0.9)
    assert state.madness_level == 0


def test_fragment_needs_more_than_twenty_chars():
    assert not should_accept(100, 0, "x" * 20)
    assert should_accept(100, 0, "x" * 21)


def test_score_below_threshold_is_rejected():
    assert not should_accept(39, 0, "A long enough fragment of text.")
    assert should_accept(40, 0, "A long enough fragment of text.")


def test_anything_long_enough_is_kept_past_sixty():
    assert not should_accept(0, 60, "A long enough fragment of text.")
    assert should_accept(0, 60.1, "A long enough fragment of text.")


@pytest.mark.parametrize("level,pool", [
    (0, "low"), (29, "low"), (30, "medium"), (50, "high"), (69, "high"), (70, "extreme"), (100, "extreme"),
])
def test_fallback_pool_by_tier(level, pool):
    assert fallback_phrase(level, random.Random(0)) in FALLBACK_PHRASES[pool]


def test_fallback_pools_are_nonempty():
    assert all(FALLBACK_PHRASES[tier] for tier in ("low", "medium", "high", "extreme"))
