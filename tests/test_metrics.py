import math

from chatstream_gateway.contracts import TokenUsage
from chatstream_gateway.metrics import TokenMeter


class FakeClock:
    def __init__(self, start: float = 100.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


def test_tokens_per_second_not_computed_on_zero_elapsed():
    clock = FakeClock()
    meter = TokenMeter("openai", clock=clock)
    meter.update(TokenUsage(input_tokens=10, output_tokens=5, total_tokens=15))
    assert meter.tokens_per_second == 0.0
    assert meter.usage.output_tokens == 5


def test_tokens_per_second_finite_and_non_negative():
    clock = FakeClock()
    meter = TokenMeter("anthropic", clock=clock)
    for i in range(1, 6):
        clock.now += 0.5
        meter.update(TokenUsage(input_tokens=10, output_tokens=i * 10, total_tokens=10 + i * 10))
        assert meter.tokens_per_second >= 0
        assert math.isfinite(meter.tokens_per_second)
    assert meter.tokens_per_second == 50 / 2.5


def test_token_counts_never_decrease():
    clock = FakeClock()
    meter = TokenMeter("gemini", clock=clock)
    clock.now += 1
    meter.update(TokenUsage(input_tokens=12, output_tokens=30, total_tokens=42))
    meter.update(TokenUsage(input_tokens=0, output_tokens=20, total_tokens=20))
    assert meter.usage == TokenUsage(input_tokens=12, output_tokens=30, total_tokens=42)


def test_finish_with_no_usage_is_safe():
    clock = FakeClock()
    meter = TokenMeter("meta", clock=clock)
    meter.finish()
    assert meter.tokens_per_second == 0.0
