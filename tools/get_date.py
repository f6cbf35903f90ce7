import argparse
import json
import sys
import time
from pathlib import Path

from dotenv import load_dotenv

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from pubdate.services.engine import ExtractionEngine  # noqa: E402
from pubdate.services.exceptions import (  # noqa: E402
    DateNotFoundError,
    ExtractionError,
)
from pubdate.services.fetch import fetch_article  # noqa: E402
from pubdate.services.jobs import validate_url  # noqa: E402
from pubdate.utils.logging_config import setup_logging  # noqa: E402


def get_date(url: str, check_modified: bool = True) -> dict:
    """Fetch the page directly and run the engine, without the job queue."""
    url = validate_url(url)
    page = fetch_article(url)
    result = ExtractionEngine().extract(page["html"], url, check_modified=check_modified)
    if not result.found:
        raise DateNotFoundError("Publish date not found", url=url, metadata=result.metadata())
    return result.to_dict()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Print the publish date of an article.")
    parser.add_argument("url", help="Article URL.")
    parser.add_argument(
        "--no-modified",
        action="store_true",
        help="Skip the modification-date pass.",
    )
    args = parser.parse_args()

    load_dotenv()
    setup_logging()
    started = time.perf_counter()
    try:
        data = get_date(args.url, check_modified=not args.no_modified)
    except ExtractionError as exc:
        print(json.dumps(exc.to_dict(), indent=2))
        sys.exit(1)
    print(f"Finished in {time.perf_counter() - started:.2f} seconds")
    print(json.dumps(data, indent=2))
