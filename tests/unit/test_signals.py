import asyncio

from src.updown_trader.models import Color, LogAction, Signal, SignalType
from src.updown_trader.signals import CandleSignalDetector, SignalRouter, match_pattern


class RecordingEngine:
    def __init__(self, bot_id: str, fail: bool = False) -> None:
        self.bot_id = bot_id
        self.fail = fail
        self.signals = []

    async def on_signal(self, signal):
        if self.fail:
            raise RuntimeError("engine down")
        self.signals.append(signal)
        return signal


def _detector(context_provider, repository, clock, engines, **kwargs) -> CandleSignalDetector:
    return CandleSignalDetector(
        context_provider,
        SignalRouter(engines),
        repository,
        ["eth"],
        clock=clock.ts,
        **kwargs,
    )


def test_match_pattern_two_and_three_candles(context_provider) -> None:
    three = context_provider.set(3, current=Color.RED, prev1=Color.RED, prev2=Color.RED)
    two_only = context_provider.set(3, current=Color.RED, prev1=Color.RED, prev2=Color.GREEN)
    broken = context_provider.set(3, current=Color.GREEN, prev1=Color.RED, prev2=Color.RED)
    unknown = context_provider.set(3, current=None, prev1=Color.RED, prev2=Color.RED)

    assert match_pattern(three, SignalType.THREE_CANDLES) is Color.RED
    assert match_pattern(three, SignalType.TWO_CANDLES) is Color.RED
    assert match_pattern(two_only, SignalType.THREE_CANDLES) is None
    assert match_pattern(two_only, SignalType.TWO_CANDLES) is Color.RED
    assert match_pattern(broken, SignalType.TWO_CANDLES) is None
    assert match_pattern(unknown, SignalType.TWO_CANDLES) is None


def test_router_isolates_failing_engine() -> None:
    healthy = RecordingEngine("bot2")
    router = SignalRouter([RecordingEngine("bot1", fail=True), healthy])

    signal = Signal(
        asset="eth",
        color=Color.RED,
        signal_market_slug="eth-updown-15m-1767225600",
        next_market_slug="eth-updown-15m-1767226500",
        signal_type=SignalType.TWO_CANDLES,
    )

    assert asyncio.run(router.dispatch(signal)) == 1
    assert len(healthy.signals) == 1


def test_signal_requires_color_to_hold(context_provider, repository, clock, slug_at) -> None:
    engine = RecordingEngine("bot1")
    detector = _detector(context_provider, repository, clock, [engine], color_hold_seconds=5)
    context_provider.set(3, current=Color.GREEN, prev1=Color.GREEN, prev2=Color.GREEN, time_to_end=300)

    async def _run():
        first = await detector.check_all()
        clock.advance(3)
        second = await detector.check_all()
        clock.advance(3)
        third = await detector.check_all()
        clock.advance(5)
        fourth = await detector.check_all()
        return first, second, third, fourth

    first, second, third, fourth = asyncio.run(_run())

    assert first == [] and second == []
    assert [signal.signal_type for signal in third] == [SignalType.THREE_CANDLES, SignalType.TWO_CANDLES]
    assert third[0].signal_market_slug == slug_at(3)
    assert third[0].next_market_slug == slug_at(4)
    assert fourth == []
    assert len(engine.signals) == 2
    logs, total = repository.list_logs(action=LogAction.DETECT)
    assert total == 2


def test_color_flip_resets_hold(context_provider, repository, clock) -> None:
    detector = _detector(context_provider, repository, clock, [], color_hold_seconds=5)

    async def _run():
        context_provider.set(3, current=Color.GREEN, prev1=Color.GREEN, time_to_end=300)
        await detector.check_all()
        clock.advance(4)
        context_provider.set(3, current=Color.RED, prev1=Color.GREEN, time_to_end=300)
        await detector.check_all()
        clock.advance(2)
        context_provider.set(3, current=Color.GREEN, prev1=Color.GREEN, time_to_end=300)
        return await detector.check_all()

    assert asyncio.run(_run()) == []


def test_no_signal_too_close_to_interval_end(context_provider, repository, clock) -> None:
    detector = _detector(context_provider, repository, clock, [], color_hold_seconds=0, min_time_before_end=60)
    context_provider.set(3, current=Color.RED, prev1=Color.RED, time_to_end=45)

    assert asyncio.run(detector.check_all()) == []


def test_no_signal_for_inactive_interval(context_provider, repository, clock) -> None:
    detector = _detector(context_provider, repository, clock, [], color_hold_seconds=0)
    context_provider.set(3, current=Color.RED, prev1=Color.RED, time_to_end=300, active=False)

    assert asyncio.run(detector.check_all()) == []


def test_new_interval_allows_new_signal(context_provider, repository, clock) -> None:
    detector = _detector(context_provider, repository, clock, [], color_hold_seconds=0)

    async def _run():
        context_provider.set(3, current=Color.RED, prev1=Color.RED, prev2=Color.GREEN, time_to_end=300)
        first = await detector.check_all()
        again = await detector.check_all()
        context_provider.set(4, current=Color.RED, prev1=Color.RED, prev2=Color.RED, time_to_end=800)
        later = await detector.check_all()
        return first, again, later

    first, again, later = asyncio.run(_run())

    assert [signal.signal_type for signal in first] == [SignalType.TWO_CANDLES]
    assert again == []
    assert len(later) == 2


def test_context_failure_is_logged(context_provider, repository, clock) -> None:
    detector = _detector(context_provider, repository, clock, [])

    assert asyncio.run(detector.check_all()) == []
    logs, total = repository.list_logs(action=LogAction.ERROR)
    assert total == 1
    assert logs[0].asset == "eth"
