import logging
from rq import Worker
from assessgrade.core.config import settings
from assessgrade.jobs.queue import redis


def main():
    logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO), format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    w = Worker([settings.RQ_QUEUE], connection=redis)
    w.work(with_scheduler=True)


if __name__ == "__main__":
    main()
