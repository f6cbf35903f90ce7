import os
import signal
import sys
import threading
from importlib import import_module
from pathlib import Path

if __package__ in {None, ""}:
    project_root = Path(__file__).resolve().parent.parent
    sys.path.insert(0, str(project_root))


def run_worker() -> None:
    """Run only the worker pool, for deployments with a shared Redis broker."""
    from dotenv import load_dotenv

    from pubdate.services.runtime import build_services
    from pubdate.utils.logging_config import setup_logging

    load_dotenv()
    setup_logging()
    services = build_services()
    stopped = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stopped.set())
    signal.signal(signal.SIGINT, lambda *_: stopped.set())
    services.workers.start()
    stopped.wait()
    services.shutdown()


if __name__ == "__main__" and "--worker" in sys.argv:
    run_worker()
    sys.exit(0)

CHECK_IMPORTS_MODE = "--check-imports" in sys.argv
if CHECK_IMPORTS_MODE:
    os.environ.setdefault("WORKERS_ENABLED", "false")

app_module = import_module("pubdate")
create_app = app_module.create_app

app = create_app()

if __name__ == "__main__":
    if CHECK_IMPORTS_MODE:
        from pubdate.startup_check import verify_imports

        verify_imports()
        print("Import check successful.")
        sys.exit(0)
    app.run(host="0.0.0.0", port=int(os.getenv("PORT", "8080")), debug=False)
