from kan_api.db import ensure_dev_seed, init_db


def main() -> None:
    init_db()
    ensure_dev_seed()


if __name__ == "__main__":
    main()
