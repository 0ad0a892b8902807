from urllib.parse import urlparse

import redis

from errors import ObjectDoesNotExist, ParameterError
from properties import PropertiesFile

CHECKPOINT_REASON = "Reason"
CHECKPOINT_LAST_KEY = "Last Key"
CHECKPOINT_NUM_KEYS = "Num Keys"


class RedisCheckpointStore():
  # Same interface as PropertiesFile, backed by a redis hash.
  # Every set is written through immediately, so sync() has nothing to do.

  def __init__(self, client, name):
    self.redis = client
    self.name = name

  def get_property(self, key):
    value = self.redis.hget(self.name, key)
    if value is None:
      raise ObjectDoesNotExist(f"Property '{key}' not found")
    return value.decode("utf-8")

  def get_property_as_integer(self, key):
    value = self.get_property(key)
    try:
      return int(value, 0)
    except ValueError:
      raise ParameterError(f"Property '{key}' is not an integer: {value}") from None

  def set_property(self, key, value):
    self.redis.hset(self.name, key, str(value))

  def set_property_from_integer(self, key, value):
    self.set_property(key, str(int(value)))

  def sync(self):
    pass


def open_checkpoint_store(path):
  # redis://host:port/db#hash-name or a properties file path
  parsed = urlparse(path)
  if parsed.scheme in ("redis", "rediss"):
    client = redis.Redis.from_url(path.split("#", 1)[0])
    return RedisCheckpointStore(client, parsed.fragment or "checkpoint")
  return PropertiesFile(path, read_only=False)
