# cci/pipeline/queue.py
import logging
import os

import redis
from rq import Queue

logger = logging.getLogger(__name__)

redis_url = os.getenv("REDIS_URL", "redis://localhost:6379/0")

# Hosted redis over TLS (rediss://) without a CA bundle on the box: skip strict cert checks
if redis_url.startswith("rediss://"):
    redis_conn = redis.from_url(redis_url, ssl_cert_reqs=None)
else:
    redis_conn = redis.from_url(redis_url)

queue = Queue("cci", connection=redis_conn)
logger.info("[Queue] Redis queue 'cci' ready.")
