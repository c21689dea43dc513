import os
import sys
from pathlib import Path

# Добавляем корень проекта и папку тестов в sys.path для импорта imaginarena и хелперов.
sys.path.append(str(Path(__file__).resolve().parents[1]))
sys.path.append(str(Path(__file__).resolve().parent))
# Задаем обязательные переменные окружения для инициализации настроек.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test.db")
os.environ.setdefault("SECRET_KEY", "test_secret")
os.environ.setdefault("IDENTITY_PROVIDER_KEY", "test_provider")
os.environ.setdefault("COIN_TOSS_DELAY_SECONDS", "0")
