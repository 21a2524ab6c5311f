import argparse

from kan_api.config import settings
from kan_api.storage import build_storage


def main() -> None:
    parser = argparse.ArgumentParser(description="Print signed URLs for a storage object.")
    parser.add_argument("key")
    parser.add_argument("--bucket", default=settings.attachments_bucket or "attachments")
    parser.add_argument("--content-type", default="application/octet-stream")
    args = parser.parse_args()

    storage = build_storage(settings)
    print(f"backend={storage.backend.name}")
    print(f"upload={storage.generate_upload_url(args.bucket, args.key, args.content_type)}")
    print(f"download={storage.generate_download_url(args.bucket, args.key)}")


if __name__ == "__main__":
    main()
