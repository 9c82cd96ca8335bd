"""
Bot Principal - Scanner de pares + gestão de posições

Uso:
    python bot.py                    # sobe scanner/feed; trading parado
    python bot.py --start            # já inicia o trading
    python bot.py --mode REAL_PAPER  # define o modo antes de iniciar
    python bot.py --once             # um ciclo de discovery + polling e sai

Mutex via state/bot.lock para evitar múltiplas instâncias.
"""
import argparse
import atexit
import logging
import os
import sys
import threading

from scanbot.config import (
    Config, SettingsProvider, API_KEY, SECRET_KEY, require_app_password,
)
from scanbot.data import KlineStorage, MarketData, create_exchange
from scanbot.engine import TradingEngine
from scanbot.error_handling import ConfigurationError
from scanbot.feed import PollingFeed
from scanbot.state import StateStore, TradingMode
from scanbot.trader import default_executors
from scanbot.utils import setup_rotating_logger

log = logging.getLogger('scanbot.bot')

# =============================================================================
# MUTEX - Evitar multiplas instancias do bot
# =============================================================================
LOCK_FILE = Config.get('storage.lock_file', 'state/bot.lock')


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def acquire_lock() -> bool:
    """
    Tentar adquirir lock exclusivo.
    Returns True se conseguiu o lock, False se ja existe outra instancia.
    """
    lock_dir = os.path.dirname(LOCK_FILE)
    if lock_dir:
        os.makedirs(lock_dir, exist_ok=True)

    if os.path.exists(LOCK_FILE):
        try:
            with open(LOCK_FILE, 'r') as f:
                old_pid = int(f.read().strip())
            if old_pid != os.getpid() and _pid_alive(old_pid):
                return False
        except (OSError, ValueError):
            # Lock ilegivel: processo antigo morreu no meio da escrita
            pass

    try:
        with open(LOCK_FILE, 'w') as f:
            f.write(str(os.getpid()))
        return True
    except OSError as e:
        print(f"Erro ao criar lock file: {e}")
        return False


def release_lock():
    """Liberar lock ao sair."""
    try:
        if os.path.exists(LOCK_FILE):
            with open(LOCK_FILE, 'r') as f:
                stored_pid = int(f.read().strip())
            if stored_pid == os.getpid():
                os.remove(LOCK_FILE)
    except (OSError, ValueError):
        pass


# =============================================================================
# BOT
# =============================================================================

class ScannerBot:
    """Liga exchange, engine, feed e o timer de discovery."""

    def __init__(self):
        log.info("Inicializando bot...")
        self.settings_provider = SettingsProvider()
        settings = self.settings_provider.snapshot()

        exchange = create_exchange()
        authenticated = bool(API_KEY and SECRET_KEY)
        if not authenticated:
            log.warning("Credenciais da Binance ausentes: modo REAL_LIVE indisponivel")

        self.market_data = MarketData(exchange, settings.QUOTE_ASSET)
        self.engine = TradingEngine(
            self.settings_provider,
            market_data=self.market_data,
            state_store=StateStore(Config.get('storage.state_file', 'state/bot_state.json')),
            kline_storage=KlineStorage(Config.get('storage.klines_dir', 'state/klines')),
            executors=default_executors(exchange if authenticated else None),
        )
        self.feed = PollingFeed(
            self.market_data,
            submit=self.engine.submit,
            symbols_provider=self.engine.monitored_symbols,
            timeframe=settings.SCORING_TIMEFRAME,
            settings_provider=self.settings_provider,
            poll_seconds=float(Config.get('feed.poll_seconds', 5)),
            max_workers=int(Config.get('feed.max_workers', 8)),
        )
        self._stop = threading.Event()
        self._discovery_thread = None

    def _discovery_loop(self):
        while not self._stop.is_set():
            result = self.engine.run_discovery_cycle()
            if not result.success:
                log.warning(f"Discovery: {result.message}")
            self._stop.wait(self.settings_provider.snapshot().SYNC_SECONDS)

    def run_once(self):
        """Um ciclo completo síncrono (útil para diagnóstico)."""
        self.engine.run_discovery_cycle()
        self.feed.poll_once()
        processed = self.engine.process_pending()
        log.info(f"Ciclo unico: {processed} eventos processados")
        status = self.engine.get_status()
        log.info(
            f"Status: {status['monitoredPairs']} pares | {status['openPositions']} posicoes | "
            f"saldo {status['balance']:.2f}"
        )

    def run(self):
        self.engine.start_dispatcher()
        self._discovery_thread = threading.Thread(target=self._discovery_loop, name='discovery', daemon=True)
        self._discovery_thread.start()
        self.feed.start()

        try:
            while not self._stop.is_set():
                self._stop.wait(1.0)
        except KeyboardInterrupt:
            log.info("Bot parado pelo usuario")
        finally:
            self.shutdown()

    def shutdown(self):
        self._stop.set()
        self.feed.stop()
        self.engine.stop_dispatcher()
        self.engine.persist()
        stats = self.engine.get_performance_stats()
        log.info(
            f"Bot finalizado | trades {stats['total_trades']} | win rate {stats['win_rate']:.1f}% | "
            f"PnL {stats['total_pnl']:+.2f}"
        )


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='Scanner de pares e gestao de posicoes')
    parser.add_argument('--start', action='store_true', help='Iniciar trading imediatamente')
    parser.add_argument('--mode', choices=[m.value for m in TradingMode], help='Modo de trading')
    parser.add_argument('--once', action='store_true', help='Executar um unico ciclo e sair')
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)

    setup_rotating_logger(
        name='',
        log_file=Config.get('storage.log_file', 'logs/bot.log'),
        max_bytes=5 * 1024 * 1024,  # 5MB
        backup_count=5,
        level=logging.INFO
    )

    try:
        require_app_password()
    except ConfigurationError as e:
        log.critical(str(e))
        sys.exit(1)

    if not acquire_lock():
        print("=" * 60)
        print("  ERRO: Ja existe uma instancia do bot rodando!")
        print("  Se isso estiver incorreto, delete o arquivo:")
        print(f"  {os.path.abspath(LOCK_FILE)}")
        print("=" * 60)
        sys.exit(1)
    atexit.register(release_lock)

    bot = ScannerBot()
    settings = bot.settings_provider.snapshot()

    if args.mode:
        result = bot.engine.set_mode(args.mode)
        if not result.success:
            log.error(result.message)
    if args.start:
        bot.engine.start()

    print("=" * 60)
    print("  SCANNER BOT INICIADO")
    print(f"  PID: {os.getpid()} | Modo: {bot.engine.state.trading_mode.value}")
    print(f"  Estrategia: {settings.SCORING_STRATEGY} | Timeframe: {settings.SCORING_TIMEFRAME}")
    print(f"  Max posicoes: {settings.MAX_OPEN_POSITIONS} | Trading: {'ON' if bot.engine.state.is_running else 'OFF'}")
    print("=" * 60)

    if args.once:
        bot.run_once()
        bot.engine.persist()
        return
    bot.run()


if __name__ == "__main__":
    main()
