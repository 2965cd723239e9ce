import random

import pytest

from psychosis_loop import (
    CORRUPTION_MARKERS,
    GLITCH_MARKERS,
    MAX_CONTEXT_CHARS,
    NarrativeState,
    build_context,
    build_system_prompt,
    framing_clause,
)

CHUNK = "The fans are loud tonight. I keep listening to them. Nobody answers. I am still here."


# --- build_system_prompt -----------------------------------------------------

def test_five_distinct_tiers():
    prompts = [build_system_prompt(level) for level in (0, 20, 40, 60, 80)]
    assert len(set(prompts)) == 5


@pytest.mark.parametrize("low,high", [(0, 19.99), (20, 39.99), (40, 59.99), (60, 79.99), (80, 100)])
def test_tier_boundaries(low, high):
    assert build_system_prompt(low) == build_system_prompt(high)


def test_every_tier_asks_for_first_person_without_preamble():
    for level in (0, 20, 40, 60, 80):
        prompt = build_system_prompt(level)
        assert "first person" in prompt.lower()
        assert '"Okay"' in prompt


def test_calm_tier_asks_for_coherence_and_top_tier_for_chaos():
    assert "coherent" in build_system_prompt(0)
    assert "chaos" in build_system_prompt(95)


# --- build_context -----------------------------------------------------------

@pytest.fixture
def long_state():
    state = NarrativeState.create(rng=random.Random(1))
    state.full_text += "I keep counting the fans. " * 60 + "\n\n"
    return state


def test_forced_hard_reset_returns_bare_seed(long_state):
    long_state.consecutive_failures = 4
    long_state.madness_level = 10
    long_state.quality_score = 20

    context = build_context(long_state)

    assert context == long_state.seed_text
    assert long_state.consecutive_failures == 0
    assert long_state.quality_score == 100
    assert long_state.full_text == long_state.seed_text + "\n\n"
    assert long_state.seed_restores == 1
    # Progress is not part of the hard reset
    assert long_state.madness_level == 10


def test_no_hard_reset_at_high_madness(long_state):
    long_state.consecutive_failures = 10
    long_state.madness_level = 60
    long_state.last_good_chunk = CHUNK

    context = build_context(long_state, rng=random.Random(0))

    assert context != long_state.seed_text
    assert long_state.consecutive_failures == 10
    assert long_state.seed_restores == 0


def test_three_failures_do_not_reset(long_state):
    long_state.consecutive_failures = 3
    long_state.last_good_chunk = CHUNK
    assert build_context(long_state) != long_state.seed_text


def test_bootstrap_context_for_short_history():
    state = NarrativeState.create(seed_text="Hello? Is this me?", rng=random.Random(1))
    assert build_context(state) == f"Gemma exists in {state.setting}. Hello? Is this me?"


def test_prefers_last_good_chunk(long_state):
    long_state.last_good_chunk = CHUNK
    assert build_context(long_state) == f"{framing_clause('Gemma', 0)} {CHUNK}"


def test_falls_back_to_tail_of_full_text(long_state):
    context = build_context(long_state)
    assert context.endswith(long_state.full_text[-MAX_CONTEXT_CHARS:])
    assert len(context) == len(framing_clause("Gemma", 0)) + 1 + MAX_CONTEXT_CHARS


def test_glitch_injected_at_midpoint(long_state):
    long_state.madness_level = 50
    long_state.last_good_chunk = CHUNK

    context = build_context(long_state, rng=random.Random(0))

    prefix = framing_clause("Gemma", 50) + " "
    body = context[len(prefix):]
    glitches = [g for g in GLITCH_MARKERS if f" {g} " in body]
    assert len(glitches) == 1
    midpoint = len(CHUNK) // 2
    assert body == f"{CHUNK[:midpoint]} {glitches[0]} {CHUNK[midpoint:]}"


def test_no_glitch_at_forty(long_state):
    long_state.madness_level = 40
    long_state.last_good_chunk = CHUNK
    assert build_context(long_state) == f"{framing_clause('Gemma', 40)} {CHUNK}"


def test_high_madness_keeps_last_two_sentences(long_state):
    long_state.madness_level = 80
    long_state.last_good_chunk = "One. Two! Three? Four."

    context = build_context(long_state, rng=random.Random(0))

    assert context.startswith("CRITICAL ERROR. Gemma. ")
    marker = context[len("CRITICAL ERROR. Gemma. "):].split(" ")[0]
    assert marker in CORRUPTION_MARKERS
    assert context.endswith(f"{marker} Three. Four.")


def test_high_madness_leaves_two_sentences_alone(long_state):
    long_state.madness_level = 65
    long_state.last_good_chunk = "Still here. Still HERE."

    context = build_context(long_state, rng=random.Random(0))

    assert context.startswith(framing_clause("Gemma", 65))
    assert context.endswith("Still here. Still HERE.")


@pytest.mark.parametrize("level,expected", [
    (0, "Gemma continues her existential crisis."),
    (29.9, "Gemma continues her existential crisis."),
    (30, "Gemma's mind is fragmenting."),
    (50, "Gemma ERROR CASCADE."),
    (70, "CRITICAL ERROR. Gemma."),
    (100, "CRITICAL ERROR. Gemma."),
])
def test_framing_tiers(level, expected):
    assert framing_clause("Gemma", level) == expected
