import os
from urllib.parse import urlparse

import redis

from errors import ObjectDoesNotExist, ObjectExists, StrategyError


class RecordStore():
  # Ordered key/value store read sequentially through a cursor.
  # sequence() and sequence_key() return the record under the cursor and
  # move past it; at the end they raise ObjectDoesNotExist.

  def sequence(self):
    key = self.sequence_key()
    return key, self.read(key)

  def sequence_key(self):
    raise NotImplementedError

  def set_cursor_at_key(self, key):
    raise NotImplementedError

  def read(self, key):
    raise NotImplementedError

  def insert(self, key, value):
    raise NotImplementedError

  def get_count(self):
    raise NotImplementedError


class MemoryRecordStore(RecordStore):
  def __init__(self, records=None):
    self.values = {}
    self.order = []
    self.cursor = 0
    for key, value in (records or {}).items():
      self.insert(key, value)

  def insert(self, key, value):
    if key in self.values:
      raise ObjectExists(f"Key {key} already stored")
    self.values[key] = bytes(value)
    self.order.append(key)
    self.order.sort()

  def read(self, key):
    try:
      return self.values[key]
    except KeyError:
      raise ObjectDoesNotExist(f"Key {key} not found") from None

  def sequence_key(self):
    if self.cursor >= len(self.order):
      raise ObjectDoesNotExist("End of sequence")
    key = self.order[self.cursor]
    self.cursor += 1
    return key

  def set_cursor_at_key(self, key):
    try:
      self.cursor = self.order.index(key)
    except ValueError:
      raise ObjectDoesNotExist(f"Key {key} not found") from None

  def get_count(self):
    return len(self.order)


class DirectoryRecordStore(RecordStore):
  # Every regular file in a directory is a record; the file name is the key.

  def __init__(self, path):
    if not os.path.isdir(path):
      raise ObjectDoesNotExist(f"Record store directory {path} does not exist")
    self.path = path
    self.order = sorted(
      name for name in os.listdir(path)
      if os.path.isfile(os.path.join(path, name)))
    self.cursor = 0

  def insert(self, key, value):
    file_path = os.path.join(self.path, key)
    if os.path.exists(file_path):
      raise ObjectExists(f"Key {key} already stored")
    with open(file_path, "wb") as f:
      f.write(value)
    self.order.append(key)
    self.order.sort()

  def read(self, key):
    try:
      with open(os.path.join(self.path, key), "rb") as f:
        return f.read()
    except FileNotFoundError:
      raise ObjectDoesNotExist(f"Key {key} not found") from None
    except OSError as e:
      raise StrategyError(f"Could not read {key}: {e}") from e

  def sequence_key(self):
    if self.cursor >= len(self.order):
      raise ObjectDoesNotExist("End of sequence")
    key = self.order[self.cursor]
    self.cursor += 1
    return key

  def set_cursor_at_key(self, key):
    try:
      self.cursor = self.order.index(key)
    except ValueError:
      raise ObjectDoesNotExist(f"Key {key} not found") from None

  def get_count(self):
    return len(self.order)


class RedisRecordStore(RecordStore):
  # Keys live in a sorted set with equal scores (so they sort
  # lexicographically), values in a hash next to it.

  def __init__(self, client, name):
    self.redis = client
    self.name = name
    self.keys_name = f"{name}:keys"
    self.values_name = f"{name}:values"
    self.cursor = 0

  def insert(self, key, value):
    if (self.redis.zadd(self.keys_name, {key: 0}, nx=True) == 0):
      raise ObjectExists(f"Key {key} already stored")
    self.redis.hset(self.values_name, key, value)

  def read(self, key):
    value = self.redis.hget(self.values_name, key)
    if value is None:
      raise ObjectDoesNotExist(f"Key {key} not found")
    return value

  def sequence_key(self):
    found = self.redis.zrange(self.keys_name, self.cursor, self.cursor)
    if not found:
      raise ObjectDoesNotExist("End of sequence")
    self.cursor += 1
    key = found[0]
    return key.decode("utf-8") if isinstance(key, bytes) else key

  def set_cursor_at_key(self, key):
    rank = self.redis.zrank(self.keys_name, key)
    if rank is None:
      raise ObjectDoesNotExist(f"Key {key} not found")
    self.cursor = rank

  def get_count(self):
    return self.redis.zcard(self.keys_name)


def open_record_store(url):
  # redis://host:port/db#name or a directory path
  parsed = urlparse(url)
  if parsed.scheme in ("redis", "rediss"):
    name = parsed.fragment or "records"
    client = redis.Redis.from_url(url.split("#", 1)[0])
    return RedisRecordStore(client, name)
  if parsed.scheme == "file":
    return DirectoryRecordStore(parsed.path)
  return DirectoryRecordStore(url)
