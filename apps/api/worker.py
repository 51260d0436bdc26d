"""RQ worker process entrypoint for ledger sweep jobs."""

from rq import Worker

from config import settings
from services.ledger_jobs import get_redis_connection


def main():
    redis_conn = get_redis_connection()
    worker = Worker([settings.LEDGER_QUEUE_NAME], connection=redis_conn)
    worker.work(with_scheduler=True)


if __name__ == "__main__":
    main()
