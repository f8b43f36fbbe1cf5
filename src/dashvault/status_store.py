"""Publish appliance status to Redis so a dashboard can follow it.

Every write is SET + PUBLISH of the key name on the status channel. Redis
being down never affects the control loop: errors are logged and dropped.
"""
from __future__ import annotations

import logging
import threading
import time
from enum import Enum

import redis


class StatusKey(Enum):
    PHASE = "phase"
    GADGET_ATTACHED = "gadget_attached"
    LAST_ARCHIVE_RESULT = "last_archive_result"
    LAST_ARCHIVE_TIME = "last_archive_time"


class NullStatus:
    def set_value(self, key, value):
        pass

    def get_value(self, key, default=None):
        return default

    def record_archive(self, ok):
        pass


class RedisStatus:

    def __init__(self, host="localhost", port=6379, db=0, channel="dashvault", client=None):
        self.r = client if client is not None else redis.StrictRedis(host=host, port=port, db=db)
        self.channel = channel
        self.lock = threading.Lock()
        self.cache = {}

    @classmethod
    def from_settings(cls, redis_settings):
        if not redis_settings.enabled:
            return NullStatus()
        return cls(host=redis_settings.host, port=redis_settings.port,
                   db=redis_settings.db, channel=redis_settings.channel)

    def get_value(self, key, default=None):
        key_name = key.value if isinstance(key, StatusKey) else str(key)
        with self.lock:
            return self.cache.get(key_name, default)

    def set_value(self, key, value):
        """Write key, publish, update cache."""
        if value is None:
            logging.warning(f"Attempted to set status key '{key}' to None. Ignoring.")
            return

        key_name = key.value if isinstance(key, StatusKey) else str(key)
        with self.lock:
            if str(self.cache.get(key_name)) == str(value):
                return                             # unchanged – nothing to do
            try:
                self.r.set(key_name, value)
                self.r.publish(self.channel, key_name)
            except redis.RedisError as e:
                logging.warning(f"Redis unavailable, status {key_name}={value} not published: {e}")
                return
            self.cache[key_name] = str(value)
        logging.debug(f"Status {key_name} = {value}")

    def record_archive(self, ok: bool) -> None:
        self.set_value(StatusKey.LAST_ARCHIVE_RESULT, "ok" if ok else "failed")
        self.set_value(StatusKey.LAST_ARCHIVE_TIME, int(time.time()))
