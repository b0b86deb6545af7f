import logging
import os

from services.transcode.worker import run_worker_service


def main() -> None:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_worker_service(
        queue_name=os.getenv("QUEUE_NAME"),
        enable_listener=os.getenv("ENABLE_LISTENER", "true").lower() != "false",
    )


if __name__ == "__main__":
    main()
