import pytest

from checkpoint import RedisCheckpointStore, open_checkpoint_store
from errors import ObjectDoesNotExist, ObjectExists
from properties import PropertiesFile
from record_store import (DirectoryRecordStore, MemoryRecordStore, RedisRecordStore,
                          open_record_store)


class FakeRedis():
  # Just the commands the record and checkpoint stores use

  def __init__(self):
    self.zsets = {}
    self.hashes = {}

  def zadd(self, name, mapping, nx=False):
    zset = self.zsets.setdefault(name, {})
    added = 0
    for member, score in mapping.items():
      if nx and member in zset:
        continue
      added += member not in zset
      zset[member] = score
    return added

  def _ordered(self, name):
    zset = self.zsets.get(name, {})
    return sorted(zset, key=lambda m: (zset[m], m))

  def zrange(self, name, start, end):
    return [m.encode() for m in self._ordered(name)[start:end + 1]]

  def zrank(self, name, member):
    ordered = self._ordered(name)
    return ordered.index(member) if member in ordered else None

  def zcard(self, name):
    return len(self.zsets.get(name, {}))

  def hset(self, name, key, value):
    if isinstance(value, str):
      value = value.encode()
    self.hashes.setdefault(name, {})[key] = value

  def hget(self, name, key):
    return self.hashes.get(name, {}).get(key)


def check_sequencing(store):
  assert store.get_count() == 3
  assert store.sequence() == ("a", b"1")
  assert store.sequence_key() == "b"
  assert store.sequence() == ("c", b"")
  with pytest.raises(ObjectDoesNotExist):
    store.sequence_key()

  store.set_cursor_at_key("b")
  assert store.sequence() == ("b", b"2")
  with pytest.raises(ObjectDoesNotExist):
    store.set_cursor_at_key("zz")
  with pytest.raises(ObjectDoesNotExist):
    store.read("zz")
  with pytest.raises(ObjectExists):
    store.insert("a", b"again")


def test_memory_record_store():
  store = MemoryRecordStore()
  for key, value in [("c", b""), ("a", b"1"), ("b", b"2")]:
    store.insert(key, value)
  check_sequencing(store)


def test_directory_record_store(tmp_path):
  store = DirectoryRecordStore(str(tmp_path))
  store.insert("b", b"2")
  store.insert("a", b"1")
  store.insert("c", b"")
  check_sequencing(store)

  reopened = open_record_store(f"file://{tmp_path}")
  assert reopened.get_count() == 3
  with pytest.raises(ObjectDoesNotExist):
    DirectoryRecordStore(str(tmp_path / "missing"))


def test_redis_record_store():
  store = RedisRecordStore(FakeRedis(), "fingers")
  store.insert("b", b"2")
  store.insert("c", b"")
  store.insert("a", b"1")
  check_sequencing(store)


def test_redis_checkpoint_store():
  data = RedisCheckpointStore(FakeRedis(), "checkpoint")
  data.set_property("Last Key", "finger-017")
  data.set_property_from_integer("Num Keys", 17)
  data.sync()
  assert data.get_property("Last Key") == "finger-017"
  assert data.get_property_as_integer("Num Keys") == 17
  with pytest.raises(ObjectDoesNotExist):
    data.get_property("Reason")


def test_open_checkpoint_store(tmp_path):
  data = open_checkpoint_store(str(tmp_path / "checkpoint.props"))
  assert isinstance(data, PropertiesFile)
  data.set_property("Reason", "test")
  data.sync()
  assert (tmp_path / "checkpoint.props").read_text() == "Reason = test\n"
