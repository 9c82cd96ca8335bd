import os

import pytest

from scanbot.config import SettingsProvider
from scanbot.data import KlineStorage, MarketData
from scanbot.engine import TradingEngine
from scanbot.error_handling import get_circuit_breaker
from scanbot.feed import CandleEvent, PollingFeed, PriceTick
from scanbot.notifications import BOT_STATUS_UPDATE, POSITIONS_UPDATED, SCANNER_UPDATE
from scanbot.scoring import Score
from scanbot.state import StateStore, TradingMode
from tests.helpers import (
    FakeExchange, MINUTE_MS, make_settings, recent_start_ts, ticker, trending_candles,
)

FOUR_HOURS_MS = 4 * 60 * 60 * 1000


def _rows(candles):
    return [c.to_ohlcv() for c in candles]


@pytest.fixture
def exchange():
    long_start = recent_start_ts(200, FOUR_HOURS_MS)
    short = trending_candles(202)
    return FakeExchange(
        tickers={
            'BTC/USDT': ticker(9e8, 50000.0, 'BTCUSDT'),
            'ETH/USDT': ticker(5e8, short[-1].close, 'ETHUSDT'),
        },
        ohlcv={
            ('BTC/USDT', '4h'): _rows(trending_candles(200, start_ts=long_start, step_ms=FOUR_HOURS_MS)),
            ('ETH/USDT', '4h'): _rows(trending_candles(200, start_ts=long_start, step_ms=FOUR_HOURS_MS)),
            # ultimo candle fica de fora da hidratacao (ainda aberto)
            ('ETH/USDT', '1m'): _rows(short[:-1]),
        },
    )


@pytest.fixture
def engine(tmp_path, exchange):
    settings = make_settings(MIN_VOLUME_USD=4e8, POSITION_SIZE_PCT=2.0)
    return TradingEngine(
        SettingsProvider(settings, persist=False),
        market_data=MarketData(exchange),
        state_store=StateStore(str(tmp_path / 'bot_state.json'), backup_dir=str(tmp_path / 'backups')),
        kline_storage=KlineStorage(str(tmp_path / 'klines')),
        queue_size=10,
    )


def _next_event(engine, symbol='ETHUSDT', closed=True):
    series = trending_candles(202)
    return CandleEvent.from_candle(symbol, '1m', series[-1], closed)


def test_discovery_cycle_merges_and_hydrates(engine):
    result = engine.run_discovery_cycle()
    assert result.success
    assert sorted(result.data['added']) == ['BTCUSDT', 'ETHUSDT']
    assert result.data['hydrated'] == ['ETHUSDT']
    assert engine.scanner.pairs['BTCUSDT'].needs_hydration
    assert not engine.scanner.pairs['ETHUSDT'].needs_hydration
    assert len(engine.candles.get('ETHUSDT', '1m')) == 200
    assert engine.notifier.last(SCANNER_UPDATE) is not None


def test_discovery_failure_keeps_pairs(engine, exchange):
    engine.run_discovery_cycle()
    exchange.fail_tickers = True
    result = engine.run_discovery_cycle()
    assert not result.success
    assert sorted(engine.scanner.pairs) == ['BTCUSDT', 'ETHUSDT']


def test_removed_symbol_loses_candles(engine, exchange):
    engine.run_discovery_cycle()
    del exchange.tickers['ETH/USDT']
    result = engine.run_discovery_cycle()
    assert result.data['removed'] == ['ETHUSDT']
    assert engine.candles.get('ETHUSDT', '1m') == []


def test_candles_of_removed_symbol_kept_until_position_closes(engine, exchange):
    engine.run_discovery_cycle()
    engine.start()
    engine.dispatch(PriceTick('ETHUSDT', 150.0))
    engine.dispatch(_next_event(engine))
    pos = engine.state.active_positions[0]

    del exchange.tickers['ETH/USDT']
    engine.run_discovery_cycle()
    assert 'ETHUSDT' not in engine.scanner.pairs
    assert engine.candles.get('ETHUSDT', '1m') != []

    assert engine.close_position_manually(pos.id).success
    assert engine.candles.get('ETHUSDT', '1m') == []
    assert 'ETHUSDT' not in engine.monitored_symbols()


def test_breaker_open_during_discovery_keeps_pairs(engine, exchange):
    engine.run_discovery_cycle()
    for i in range(get_circuit_breaker('data_fetch').failure_threshold + 1):
        symbol = f'COIN{i}/USDT'
        exchange.tickers[symbol] = ticker(5e9 - i, 1.0, f'COIN{i}USDT')
        exchange.fail_ohlcv.add(symbol)

    result = engine.run_discovery_cycle()
    assert not result.success
    assert sorted(engine.scanner.pairs) == ['BTCUSDT', 'ETHUSDT']
    assert len(engine.candles.get('ETHUSDT', '1m')) == 200


def test_closed_candle_scores_without_trading_when_stopped(engine):
    engine.run_discovery_cycle()
    pair = engine.dispatch(_next_event(engine))
    assert pair.score == Score.STRONG_BUY
    assert engine.state.active_positions == []


def test_out_of_order_closed_candle_is_not_rescored(engine):
    engine.run_discovery_cycle()
    pair = engine.dispatch(_next_event(engine))
    last_update = pair.last_update
    received = []
    engine.notifier.subscribe(received.append)

    stale = trending_candles(202)[-5]
    assert engine.dispatch(CandleEvent.from_candle('ETHUSDT', '1m', stale, True)) is None
    assert pair.last_update == last_update
    assert received == []
    assert engine.candles.last('ETHUSDT', '1m').timestamp == trending_candles(202)[-1].timestamp


def test_open_candle_is_stored_but_not_scored(engine):
    engine.run_discovery_cycle()
    assert engine.dispatch(_next_event(engine, closed=False)) is None
    assert engine.candles.last('ETHUSDT', '1m').timestamp == trending_candles(202)[-1].timestamp


def test_buy_signal_opens_position_when_running(engine, tmp_path):
    engine.run_discovery_cycle()
    assert engine.start().success
    engine.dispatch(PriceTick('ETHUSDT', 150.0))
    engine.dispatch(_next_event(engine))

    assert len(engine.state.active_positions) == 1
    pos = engine.state.active_positions[0]
    assert pos.symbol == 'ETHUSDT'
    assert pos.entry_price == 150.0
    assert engine.state.balance == pytest.approx(10000.0 - 200.0)
    assert engine.notifier.last(POSITIONS_UPDATED)['payload']['positions'][0]['symbol'] == 'ETHUSDT'
    assert os.path.exists(tmp_path / 'bot_state.json')


def test_price_tick_applies_exit_rules(engine):
    engine.run_discovery_cycle()
    engine.start()
    engine.dispatch(PriceTick('ETHUSDT', 150.0))
    engine.dispatch(_next_event(engine))
    pos = engine.state.active_positions[0]

    closed = engine.dispatch(PriceTick('ETHUSDT', pos.take_profit + 1))
    assert [p.id for p in closed] == [pos.id]
    assert engine.state.active_positions == []


def test_price_tick_when_stopped_only_updates_price(engine):
    engine.run_discovery_cycle()
    assert engine.dispatch(PriceTick('ETHUSDT', 123.0)) == []
    assert engine.scanner.pairs['ETHUSDT'].price == 123.0
    assert engine.dispatch(PriceTick('ETHUSDT', 0.0)) == []


def test_start_stop_are_idempotent(engine):
    assert engine.start().success
    assert not engine.start().success
    assert engine.notifier.last(BOT_STATUS_UPDATE)['payload']['isRunning'] is True
    assert engine.stop().success
    assert not engine.stop().success


def test_stop_keeps_open_positions(engine):
    engine.run_discovery_cycle()
    engine.start()
    engine.dispatch(_next_event(engine))
    engine.stop()
    assert len(engine.state.active_positions) == 1


def test_set_mode_rules(engine):
    assert not engine.set_mode('INVALID').success
    assert not engine.set_mode('REAL_LIVE').success
    assert engine.set_mode('REAL_PAPER').success
    assert engine.state.trading_mode == TradingMode.REAL_PAPER

    engine.run_discovery_cycle()
    engine.start()
    engine.dispatch(_next_event(engine))
    result = engine.set_mode('VIRTUAL')
    assert not result.success
    assert engine.state.trading_mode == TradingMode.REAL_PAPER


def test_manual_close_uses_last_price(engine):
    engine.run_discovery_cycle()
    engine.start()
    engine.dispatch(PriceTick('ETHUSDT', 150.0))
    engine.dispatch(_next_event(engine))
    pos = engine.state.active_positions[0]

    engine.dispatch(PriceTick('ETHUSDT', 151.0))
    result = engine.close_position_manually(pos.id)
    assert result.success
    assert result.data['exit_price'] == 151.0
    assert result.data['exit_reason'] == 'MANUAL'
    assert not engine.close_position_manually(pos.id).success


def test_update_settings_is_atomic(engine):
    assert not engine.update_settings({'STOP_LOSS_PCT': 1.0, 'NOPE': 1}).success
    assert engine.settings_provider.snapshot().STOP_LOSS_PCT == 2.0
    assert engine.update_settings({'STOP_LOSS_PCT': '1.5'}).success
    assert engine.settings_provider.snapshot().STOP_LOSS_PCT == 1.5


def test_clear_data(engine):
    engine.run_discovery_cycle()
    engine.start()
    engine.dispatch(_next_event(engine))
    engine.cooldowns.set('BTCUSDT', 4)

    assert engine.clear_data().success
    assert engine.state.balance == 10000.0
    assert engine.state.active_positions == []
    assert not engine.state.is_running
    assert len(engine.cooldowns) == 0


def test_queue_and_polling_feed(engine, exchange):
    engine.run_discovery_cycle()
    exchange.ohlcv[('ETH/USDT', '1m')] = _rows(trending_candles(202))
    feed = PollingFeed(MarketData(exchange), engine.submit, engine.monitored_symbols, timeframe='1m')

    sent = feed.poll_once()
    assert sent > 0
    assert engine.process_pending() == sent
    assert engine.scanner.pairs['ETHUSDT'].last_update > 0

    # Mesmo candle fechado nao e reenviado
    feed.poll_once()
    closed = [e for e in _drain(engine) if isinstance(e, CandleEvent) and e.is_closed]
    assert closed == []


def _drain(engine):
    events = []
    while not engine._events.empty():
        events.append(engine._events.get_nowait())
    return events


def test_status(engine):
    engine.run_discovery_cycle()
    status = engine.get_status()
    assert status['monitoredPairs'] == 2
    assert status['tradingMode'] == 'VIRTUAL'
    assert status['health']['status'] == 'healthy'
    assert engine.monitored_symbols() == ['BTCUSDT', 'ETHUSDT']


def test_scoring_timeframe_change_rehydrates_and_feed_follows(engine, exchange):
    engine.run_discovery_cycle()
    exchange.ohlcv[('ETH/USDT', '5m')] = _rows(trending_candles(202, step_ms=5 * MINUTE_MS))
    feed = PollingFeed(MarketData(exchange), engine.submit, engine.monitored_symbols,
                       timeframe='1m', settings_provider=engine.settings_provider)

    assert engine.update_settings({'SCORING_TIMEFRAME': '5m'}).success
    assert engine.candles.get('ETHUSDT', '1m') == []
    assert len(engine.candles.get('ETHUSDT', '5m')) == 200
    assert not engine.scanner.pairs['ETHUSDT'].needs_hydration
    assert engine.scanner.pairs['BTCUSDT'].needs_hydration

    feed.poll_once()
    assert feed.timeframe == '5m'
    assert exchange.ohlcv_calls[-1]['timeframe'] == '5m'
    engine.process_pending()
    assert engine.scanner.pairs['ETHUSDT'].last_update > 0


def test_performance_stats(engine):
    assert engine.get_performance_stats()['total_trades'] == 0

    engine.run_discovery_cycle()
    engine.start()
    engine.dispatch(PriceTick('ETHUSDT', 150.0))
    engine.dispatch(_next_event(engine))
    pos = engine.state.active_positions[0]
    engine.dispatch(PriceTick('ETHUSDT', pos.take_profit + 1))

    stats = engine.get_performance_stats()
    assert stats['total_trades'] == 1
    assert stats['winning_trades'] == 1
    assert stats['losing_trades'] == 0
    assert stats['win_rate'] == 100.0
    assert stats['total_pnl'] == pytest.approx(engine.state.trade_history[0].pnl)
    assert stats['total_pnl'] > 0
