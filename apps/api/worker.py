"""RQ worker process entrypoint for notification jobs."""

from rq import Worker

from config import settings
from services.notifications import get_redis_connection


def main():
    redis_conn = get_redis_connection()
    worker = Worker([settings.NOTIFICATION_QUEUE_NAME], connection=redis_conn)
    worker.work(with_scheduler=True)


if __name__ == "__main__":
    main()
