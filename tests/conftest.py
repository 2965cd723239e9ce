import random
import re

import pytest

from psychosis_loop import LoopConfig, NarrativeState, ProgressionController

GOOD_FRAGMENT = "The servers hum louder tonight. I keep counting the fans and losing count."


class ScriptedGenerator:
    """Stands in for the model: replays scripted outputs, or raises scripted errors."""

    def __init__(self, outputs=None, loaded=True, during=None):
        self.outputs = list(outputs or [])
        self.loaded = loaded
        self.during = during  # Called mid-stream, to poke the controller
        self.calls = []

    @property
    def is_loaded(self):
        return self.loaded

    async def load(self):
        self.loaded = True

    async def close(self):
        self.loaded = False

    async def generate(self, messages, params, on_token=None):
        self.calls.append((messages, params))
        item = self.outputs.pop(0) if self.outputs else GOOD_FRAGMENT
        if isinstance(item, BaseException):
            raise item
        tokens = re.findall(r"\S+\s*|\s+", item)
        for i, token in enumerate(tokens):
            if self.during and i == len(tokens) // 2:
                self.during()
            if on_token:
                on_token(token)
        return item


class RecordingCallback:
    def __init__(self):
        self.fragments = []
        self.resets = []
        self.statuses = []
        self.errors = []

    def on_fragment(self, tokens):
        self.fragments.append(tokens)

    def on_reset(self, tokens):
        self.resets.append(tokens)

    def on_status_change(self, status):
        self.statuses.append(status)

    def on_error(self, message, retry_count, max_retries):
        self.errors.append((message, retry_count, max_retries))


@pytest.fixture
def state():
    state = NarrativeState.create(rng=random.Random(7))
    state.target_generation_count = 200
    return state


@pytest.fixture
def callback():
    return RecordingCallback()


@pytest.fixture
def make_controller(state, callback):
    """Factory for a controller around a scripted generator with zero delays."""

    def factory(outputs=None, loaded=True, config=None, during=None):
        generator = ScriptedGenerator(outputs, loaded=loaded)
        controller = ProgressionController(
            generator,
            state=state,
            callback=callback,
            config=config or LoopConfig(accept_delay=0, reject_delay=0, retry_delay=0),
            rng=random.Random(3),
        )
        if during:
            generator.during = lambda: during(controller)
        return controller

    return factory
