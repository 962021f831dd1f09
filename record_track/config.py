import os
from pathlib import Path

from .constants import DATA_DIR, DATA_DIR_ENV, DB_FILE_NAME

BASE_DIR = Path(__file__).resolve().parent


def data_path() -> Path:
    """RECORD_TRACK_DATA_DIR when set, else <package>/data."""
    override = os.environ.get(DATA_DIR_ENV)
    return Path(override).expanduser() if override else BASE_DIR / DATA_DIR


DATA_PATH = data_path()
DB_PATH = DATA_PATH / DB_FILE_NAME

# ensure data dir exists early
DATA_PATH.mkdir(parents=True, exist_ok=True)
