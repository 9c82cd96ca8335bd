import json

from scanbot.state import BotState, Position, PositionStatus, StateStore, TradingMode


def _position(**overrides):
    values = dict(
        id=1, symbol='BTCUSDT', entry_price=100.0, quantity=2.0, initial_quantity=2.0,
        stop_loss=98.0, take_profit=104.0, highest_price_since_entry=101.0,
        entry_time='2026-03-01T10:00:00',
    )
    values.update(overrides)
    return Position(**values)


def test_initial_stop_defaults_to_stop_loss():
    assert _position().initial_stop_loss == 98.0
    assert _position(initial_stop_loss=97.0).initial_stop_loss == 97.0


def test_state_file_uses_camel_case_keys():
    state = BotState(balance=9800.0, active_positions=[_position()], trade_id_counter=2,
                     is_running=True, trading_mode=TradingMode.REAL_PAPER)
    data = state.to_dict()
    assert set(data) == {'balance', 'activePositions', 'tradeHistory', 'tradeIdCounter', 'isRunning', 'tradingMode'}
    assert data['tradingMode'] == 'REAL_PAPER'
    assert data['activePositions'][0]['status'] == 'FILLED'


def test_store_roundtrip(tmp_path):
    path = tmp_path / 'bot_state.json'
    store = StateStore(str(path), backup_dir=str(tmp_path / 'backups'))

    closed = _position(id=1, status=PositionStatus.CLOSED, exit_price=103.0, exit_reason='TAKE_PROFIT', pnl=6.0)
    state = BotState(balance=10006.0, active_positions=[_position(id=2)], trade_history=[closed],
                     trade_id_counter=3, is_running=True)
    store.save(state)

    loaded = store.load(initial_balance=5000.0)
    assert loaded == state
    assert loaded.balance == 10006.0
    assert loaded.trade_id_counter == 3
    assert loaded.is_running is True
    assert loaded.active_positions[0].id == 2
    assert loaded.trade_history[0].status == PositionStatus.CLOSED
    assert loaded.trade_history[0].pnl == 6.0


def test_missing_file_gives_initial_state(tmp_path):
    state = StateStore(str(tmp_path / 'absent.json')).load(initial_balance=7500.0)
    assert state.balance == 7500.0
    assert state.active_positions == []
    assert state.trade_id_counter == 1
    assert state.trading_mode == TradingMode.VIRTUAL


def test_invalid_file_gives_initial_state(tmp_path):
    path = tmp_path / 'bot_state.json'
    path.write_text(json.dumps({'balance': 'abc', 'activePositions': 'x'}))
    assert StateStore(str(path)).load(initial_balance=10000.0).balance == 10000.0

    path.write_text('{not json')
    assert StateStore(str(path)).load(initial_balance=10000.0).balance == 10000.0


def test_unknown_position_fields_are_ignored():
    data = _position().to_dict()
    data['legacy_field'] = 'x'
    assert Position.from_dict(data).symbol == 'BTCUSDT'


def test_reset_keeps_instance():
    state = BotState(balance=1.0, active_positions=[_position()], trade_id_counter=9, is_running=True)
    state.reset(10000.0)
    assert state.balance == 10000.0
    assert state.active_positions == []
    assert state.trade_id_counter == 1
    assert state.is_running is False


def test_performance_stats():
    assert BotState().performance_stats() == {
        'total_trades': 0, 'winning_trades': 0, 'losing_trades': 0,
        'total_pnl': 0.0, 'win_rate': 0.0, 'profit_factor': 0.0,
    }

    history = [
        _position(id=1, status=PositionStatus.CLOSED, pnl=6.0),
        _position(id=2, status=PositionStatus.CLOSED, pnl=-2.0),
        _position(id=3, status=PositionStatus.CLOSED, pnl=0.0),
        _position(id=4, status=PositionStatus.CLOSED, pnl=4.0),
    ]
    stats = BotState(trade_history=history).performance_stats()
    assert stats['total_trades'] == 4
    assert stats['winning_trades'] == 2
    # PnL zero conta como perdedor
    assert stats['losing_trades'] == 2
    assert stats['total_pnl'] == 8.0
    assert stats['win_rate'] == 50.0
    assert stats['profit_factor'] == 5.0
