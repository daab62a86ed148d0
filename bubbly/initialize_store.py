import sys

from bubbly.config import app_config
from bubbly.internal.storage.json_store import JsonStore


def main() -> int:
    data_dir = app_config.get_data_dir()
    print(f"Initializing data directory at {data_dir}...")
    try:
        JsonStore(data_dir).ensure_layout()
        print("Data directory initialized successfully.")
    except OSError as e:
        print(f"Failed to initialize data directory: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
