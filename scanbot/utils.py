"""
Utility functions for the scanner bot.
Includes atomic file operations to prevent partial writes.

- Backup automático de state com rotação (manter últimos N)
- Rotação de logs
- Logs com categoria (SCANNER, TRADE, WARN, ERROR, BINANCE_API...)
"""
import json
import os
import sys
import tempfile
import shutil
import logging
import time
import glob
from datetime import datetime
from logging.handlers import RotatingFileHandler
from typing import Any, Optional

logger = logging.getLogger(__name__)

# Configurações de backup
BACKUP_DIR = 'state/backups'
MAX_BACKUPS = 10

# Categorias de log
SCANNER = 'SCANNER'
TRADE = 'TRADE'
BINANCE_API = 'BINANCE_API'
BINANCE_WS = 'BINANCE_WS'
INFO = 'INFO'

LOG_FORMAT = '%(asctime)s | %(category)-11s | %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'


def save_json_atomic(filepath: str, data: Any, indent: int = 2):
    """
    Save JSON data atomically to avoid partial writes or race conditions.
    Writes to a temp file first, then renames it to the target file.
    """
    dir_name = os.path.dirname(filepath)
    if dir_name:
        os.makedirs(dir_name, exist_ok=True)

    # Temp file in the same directory so the rename stays atomic
    fd, temp_path = tempfile.mkstemp(dir=dir_name or None, text=True)

    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=indent, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())

        shutil.move(temp_path, filepath)

    except Exception as e:
        logger.error(f"Error saving JSON atomically to {filepath}: {e}")
        if os.path.exists(temp_path):
            try:
                os.remove(temp_path)
            except OSError:
                pass
        raise


def load_json_safe(filepath: str, default: Any = None, retries: int = 3, delay: float = 0.1) -> Any:
    """
    Load JSON data safely with retries.
    Returns `default` when the file is missing or cannot be decoded.
    """
    if default is None:
        default = {}

    if not os.path.exists(filepath):
        return default

    for i in range(retries):
        try:
            with open(filepath, 'r', encoding='utf-8') as f:
                return json.load(f)
        except json.JSONDecodeError:
            if i == retries - 1:
                logger.warning(f"JSON decode error in {filepath}")
                return default
            time.sleep(delay)
        except OSError as e:
            logger.error(f"Error loading {filepath}: {e}")
            return default

    return default


def backup_state_file(filepath: str, backup_dir: str = BACKUP_DIR) -> bool:
    """
    Cria backup de um arquivo de state.
    Mantém apenas os últimos MAX_BACKUPS backups.

    Returns:
        True se backup foi criado com sucesso
    """
    if not os.path.exists(filepath):
        return False

    try:
        os.makedirs(backup_dir, exist_ok=True)

        basename = os.path.basename(filepath)
        name, ext = os.path.splitext(basename)
        timestamp = datetime.now().strftime('%Y%m%d_%H%M%S_%f')
        backup_path = os.path.join(backup_dir, f"{name}_{timestamp}{ext}")

        shutil.copy2(filepath, backup_path)
        logger.debug(f"Backup criado: {backup_path}")

        cleanup_old_backups(name, ext, backup_dir)
        return True

    except OSError as e:
        logger.error(f"Erro ao criar backup de {filepath}: {e}")
        return False


def cleanup_old_backups(basename: str, ext: str, backup_dir: str = BACKUP_DIR):
    """Remove backups antigos, mantendo apenas os últimos MAX_BACKUPS."""
    pattern = os.path.join(backup_dir, f"{basename}_*{ext}")
    backups = sorted(glob.glob(pattern), reverse=True)

    for old_backup in backups[MAX_BACKUPS:]:
        try:
            os.remove(old_backup)
            logger.debug(f"Backup antigo removido: {old_backup}")
        except OSError as e:
            logger.warning(f"Erro ao remover backup antigo {old_backup}: {e}")


# =============================================================================
# LOGGING COM CATEGORIAS
# =============================================================================

class CategoryFilter(logging.Filter):
    """
    Garante o atributo `category` em todo record.

    WARNING vira WARN e ERROR/CRITICAL vira ERROR, independente da categoria
    de origem; records sem categoria recebem INFO.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= logging.ERROR:
            record.category = 'ERROR'
        elif record.levelno >= logging.WARNING:
            record.category = 'WARN'
        elif not getattr(record, 'category', None):
            record.category = INFO
        return True


class CategoryAdapter(logging.LoggerAdapter):
    """LoggerAdapter que marca cada record com uma categoria fixa."""

    def process(self, msg, kwargs):
        extra = dict(kwargs.get('extra') or {})
        extra.setdefault('category', self.extra['category'])
        kwargs['extra'] = extra
        return msg, kwargs


def get_category_logger(name: str, category: str) -> CategoryAdapter:
    """Logger do módulo `name` com todas as linhas marcadas com `category`."""
    return CategoryAdapter(logging.getLogger(name), {'category': category})


def setup_rotating_logger(
    name: str,
    log_file: str,
    max_bytes: int = 5 * 1024 * 1024,  # 5MB
    backup_count: int = 5,
    level: int = logging.INFO,
    console: bool = True
) -> logging.Logger:
    """
    Configura um logger com rotação automática de arquivos.

    Args:
        name: Nome do logger ('' para o root logger)
        log_file: Caminho do arquivo de log
        max_bytes: Tamanho máximo do arquivo antes de rotacionar
        backup_count: Número de arquivos de backup a manter
        level: Nível de logging
        console: Também escrever em stdout

    Returns:
        Logger configurado
    """
    log_dir = os.path.dirname(log_file)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)

    log = logging.getLogger(name)
    log.setLevel(level)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)

    # Evitar handlers duplicados
    if not any(isinstance(h, RotatingFileHandler) for h in log.handlers):
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding='utf-8'
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        file_handler.addFilter(CategoryFilter())
        log.addHandler(file_handler)

    if console and not any(type(h) is logging.StreamHandler for h in log.handlers):
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        console_handler.addFilter(CategoryFilter())
        log.addHandler(console_handler)

    return log


def now_ms() -> int:
    """Timestamp atual em milissegundos."""
    return int(time.time() * 1000)


def safe_float(value: Any, default: Optional[float] = None) -> Optional[float]:
    """Converter para float; `default` se vazio ou invalido."""
    try:
        if value is None or value == '':
            return default
        return float(value)
    except (TypeError, ValueError):
        return default
