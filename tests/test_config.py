import json
from datetime import datetime, timedelta

import ccxt
import pytest

from scanbot.config import (
    BotSettings, SettingsFile, SettingsProvider, coerce_value, require_app_password,
    validate_settings_values,
)
from scanbot.cooldown import CooldownRegistry
from scanbot.error_handling import (
    CircuitBreaker, ConfigurationError, CriticalError, ExchangeUnavailable, RetryPolicy, order_call, scan_call,
)
from scanbot.notifications import Notifier, SCANNER_UPDATE
from tests.helpers import make_settings


def test_coerce_value_from_env_strings():
    assert coerce_value(bool, 'true') is True
    assert coerce_value(bool, 'OFF') is False
    assert coerce_value(int, '5') == 5
    assert coerce_value(float, '2.5') == 2.5
    assert coerce_value(str, 'x') == 'x'
    with pytest.raises(ValueError):
        coerce_value(bool, 'talvez')
    with pytest.raises(ValueError):
        coerce_value(int, '2.5')


def test_from_dict_ignores_unknown_keys():
    settings = BotSettings.from_dict({'MAX_OPEN_POSITIONS': '3', 'UNKNOWN': 1})
    assert settings.MAX_OPEN_POSITIONS == 3


def test_excluded_pairs_normalized():
    assert make_settings(EXCLUDED_PAIRS=' usdcusdt, FDUSDUSDT ,,').excluded_pairs == ['USDCUSDT', 'FDUSDUSDT']


def test_update_applies_and_notifies():
    provider = SettingsProvider(make_settings(), persist=False)
    seen = []
    provider.subscribe(seen.append)
    before = provider.snapshot()

    result = provider.update({'MAX_OPEN_POSITIONS': 3, 'USE_TRAILING_STOP_LOSS': 'true'})
    assert result.success
    assert provider.snapshot().MAX_OPEN_POSITIONS == 3
    assert provider.snapshot().USE_TRAILING_STOP_LOSS is True
    assert before.MAX_OPEN_POSITIONS == 5
    assert seen == [provider.snapshot()]


@pytest.mark.parametrize('changes', [
    {},
    {'NOT_A_SETTING': 1},
    {'MAX_OPEN_POSITIONS': 'abc'},
    {'STOP_LOSS_PCT': 0},
    {'BREAKEVEN_TRIGGER_STYLE': 'ATR'},
    {'SCORING_STRATEGY': 'ml'},
    {'MAX_OPEN_POSITIONS': 2, 'PARTIAL_TP_SELL_QTY_PCT': 150},
])
def test_invalid_update_rejected_whole(changes):
    provider = SettingsProvider(make_settings(), persist=False)
    before = provider.snapshot()
    assert not provider.update(changes).success
    assert provider.snapshot() is before


def test_validate_settings_values():
    assert validate_settings_values({'POSITION_SIZE_PCT': 1.0}) is None
    assert validate_settings_values({'MAX_OPEN_POSITIONS': -1}) is not None


def test_require_app_password(monkeypatch):
    monkeypatch.delenv('APP_PASSWORD', raising=False)
    with pytest.raises(ConfigurationError):
        require_app_password()
    monkeypatch.setenv('APP_PASSWORD', 'segredo')
    assert require_app_password() == 'segredo'


# ==================== ERROR HANDLING / COOLDOWN / NOTIFIER ====================

def _breaker(now, threshold=2, timeout=30):
    return CircuitBreaker('teste', failure_threshold=threshold, recovery_timeout=timeout,
                          half_open_max_calls=1, clock=lambda: now[0])


def test_circuit_breaker_opens_then_recovers_after_timeout():
    now = [1000.0]
    breaker = _breaker(now)

    @scan_call(breaker)
    def fetch(fail):
        if fail:
            raise ccxt.NetworkError('timeout')
        return 'ok'

    for _ in range(2):
        with pytest.raises(ccxt.NetworkError):
            fetch(True)
    assert breaker.state == CircuitBreaker.OPEN

    with pytest.raises(ExchangeUnavailable):
        fetch(False)

    now[0] += 31
    assert fetch(False) == 'ok'
    assert breaker.state == CircuitBreaker.CLOSED
    assert breaker.stats['failures'] == 0


def test_circuit_breaker_half_open_failure_reopens():
    now = [0.0]
    breaker = _breaker(now, threshold=1)
    breaker.record_failure()
    now[0] += 31
    breaker.before_call()
    assert breaker.state == CircuitBreaker.HALF_OPEN
    with pytest.raises(ExchangeUnavailable):
        breaker.before_call()
    breaker.record_failure()
    assert breaker.is_open


def test_scan_call_maps_authentication_to_critical():
    @scan_call(_breaker([0.0]))
    def fetch():
        raise ccxt.AuthenticationError('chave invalida')

    with pytest.raises(CriticalError):
        fetch()


def test_order_call_retries_network_errors():
    calls = []
    delays = []
    breaker = _breaker([0.0], threshold=1)

    @order_call(breaker, RetryPolicy(max_attempts=3, base_delay=0.01, jitter=False), sleep=delays.append)
    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise ccxt.NetworkError('timeout')
        return 'ok'

    assert flaky() == 'ok'
    assert len(calls) == 3
    assert delays == [pytest.approx(0.01), pytest.approx(0.02)]
    assert breaker.state == CircuitBreaker.CLOSED


def test_order_call_exhausted_retries_count_once_on_breaker():
    breaker = _breaker([0.0], threshold=2)

    @order_call(breaker, RetryPolicy(max_attempts=2, jitter=False), sleep=lambda s: None)
    def down():
        raise ccxt.NetworkError('timeout')

    with pytest.raises(ccxt.NetworkError):
        down()
    assert breaker.stats['failures'] == 1


def test_order_call_does_not_retry_rejected_orders():
    calls = []
    breaker = _breaker([0.0], threshold=1)

    @order_call(breaker, RetryPolicy(max_attempts=3), sleep=lambda s: None)
    def rejected():
        calls.append(1)
        raise ccxt.InvalidOrder('min notional')

    with pytest.raises(ccxt.InvalidOrder):
        rejected()
    assert len(calls) == 1
    assert breaker.state == CircuitBreaker.CLOSED


def test_retry_policy_delay_is_capped():
    policy = RetryPolicy.from_dict({'base_delay': 1.0, 'max_delay': 5.0, 'jitter': False, 'unknown': 1})
    assert policy.delay(1) == pytest.approx(1.0)
    assert policy.delay(2) == pytest.approx(2.0)
    assert policy.delay(10) == pytest.approx(5.0)


def test_settings_file_merges_defaults_and_persists_section(tmp_path):
    path = str(tmp_path / 'settings.json')
    with open(path, 'w') as f:
        json.dump({'bot': {'MAX_OPEN_POSITIONS': 3}}, f)

    settings_file = SettingsFile(path)
    assert settings_file.get('bot.MAX_OPEN_POSITIONS') == 3
    assert settings_file.get('bot.TAKE_PROFIT_PCT') == 4.0
    assert settings_file.get('nao.existe', 'x') == 'x'

    settings_file.update_section('bot', {'STOP_LOSS_PCT': 1.5})
    with open(path) as f:
        saved = json.load(f)
    assert saved['bot']['STOP_LOSS_PCT'] == 1.5
    assert saved['bot']['MAX_OPEN_POSITIONS'] == 3
    assert 'last_updated' in saved


def test_settings_file_created_with_defaults(tmp_path):
    path = tmp_path / 'novo' / 'settings.json'
    settings_file = SettingsFile(str(path))
    assert path.exists()
    assert settings_file.get('bot.MAX_OPEN_POSITIONS') == BotSettings().MAX_OPEN_POSITIONS


def test_cooldown_registry_expiry():
    now = datetime(2026, 1, 1)
    registry = CooldownRegistry()
    assert registry.set('BTCUSDT', 0) is None
    registry.set('BTCUSDT', 2, now=now)
    assert registry.is_active('BTCUSDT', now + timedelta(hours=1))
    assert registry.remaining('BTCUSDT', now + timedelta(hours=1)) == timedelta(hours=1)
    assert not registry.is_active('BTCUSDT', now + timedelta(hours=2))

    # Expirados so saem em uma nova escrita
    assert len(registry) == 1
    registry.set('ETHUSDT', 2, now=now + timedelta(hours=3))
    assert len(registry) == 1


def test_notifier_isolates_failing_subscribers():
    notifier = Notifier()
    received = []

    def broken(event):
        raise RuntimeError('falhou')

    notifier.subscribe(broken)
    notifier.subscribe(received.append)
    notifier.emit(SCANNER_UPDATE, [])
    assert received == [{'type': SCANNER_UPDATE, 'payload': []}]
    with pytest.raises(ValueError):
        notifier.emit('OTHER', {})


def test_notifier_unsubscribe_and_last():
    notifier = Notifier()
    received = []
    notifier.subscribe(received.append)
    notifier.emit(SCANNER_UPDATE, [1])
    notifier.unsubscribe(received.append)
    notifier.unsubscribe(received.append)
    notifier.emit(SCANNER_UPDATE, [2])

    assert [e['payload'] for e in received] == [[1]]
    assert notifier.last(SCANNER_UPDATE)['payload'] == [2]
    assert notifier.last('POSITIONS_UPDATED') is None
