import pytest

from checkpoint import CHECKPOINT_LAST_KEY, CHECKPOINT_NUM_KEYS, CHECKPOINT_REASON
from distributor import RecordStoreDistributor
from errors import ObjectDoesNotExist, StrategyError
from properties import PropertiesFile
from record_store import MemoryRecordStore
from resources import RecordStoreResources


class CorruptRecordStore(MemoryRecordStore):
  # Reading a corrupt key moves the cursor past it, then fails

  def __init__(self, records, corrupt):
    super().__init__(records)
    self.corrupt = set(corrupt)

  def sequence(self):
    key = self.sequence_key()
    if key in self.corrupt:
      raise StrategyError(f"Could not read {key}")
    return key, self.read(key)


def make_keys(count):
  return [f"finger-{i:03d}" for i in range(count)]


def make_distributor(tmp_path, store, chunk_size, include_values=True):
  props = tmp_path / "job.props"
  props.write_text(
    "Workers Per Node = 1\n"
    f"Chunk Size = {chunk_size}\n"
    f"Checkpoint Path = {tmp_path / 'checkpoint.props'}\n")
  resources = RecordStoreResources(str(props), record_store=store)
  return RecordStoreDistributor(resources, None, include_values)


def drain(distributor):
  sizes = []
  while True:
    wp = distributor.create_work_package()
    sizes.append(wp.num_elements)
    if wp.num_elements == 0:
      return sizes


def test_chunking_ten_keys_by_four(tmp_path):
  keys = make_keys(10)
  store = MemoryRecordStore({k: k.encode() for k in keys})
  distributor = make_distributor(tmp_path, store, 4)

  first = distributor.create_work_package()
  second = distributor.create_work_package()
  distributor.checkpoint_save("Work package distributed")
  rest = drain(distributor)

  assert [first.num_elements, second.num_elements] + rest == [4, 4, 2, 0]
  assert first.keys() + second.keys() == keys[:8]
  data = PropertiesFile(str(tmp_path / "checkpoint.props"))
  assert data.get_property_as_integer(CHECKPOINT_NUM_KEYS) == 8
  assert data.get_property(CHECKPOINT_LAST_KEY) == keys[7]
  assert data.get_property(CHECKPOINT_REASON) == "Work package distributed"


@pytest.mark.parametrize("count,chunk", [(1, 1), (7, 3), (12, 4), (5, 10), (100, 7)])
def test_every_key_distributed_once(tmp_path, count, chunk):
  keys = make_keys(count)
  distributor = make_distributor(tmp_path, MemoryRecordStore({k: b"v" for k in keys}), chunk)

  distributed = []
  while True:
    wp = distributor.create_work_package()
    if wp.num_elements == 0:
      break
    assert wp.num_elements <= chunk
    distributed += wp.keys()

  assert distributed == keys
  assert distributor.records_remaining == 0
  assert distributor.is_exhausted()


def test_exhausted_distributor_keeps_sending_empty_packages(tmp_path):
  distributor = make_distributor(tmp_path, MemoryRecordStore({"a": b"1"}), 5)
  assert distributor.create_work_package().num_elements == 1
  for _ in range(3):
    wp = distributor.create_work_package()
    assert wp.num_elements == 0
    assert wp.size == 0
  assert distributor.records_remaining == 0


def test_corrupt_key_is_skipped(tmp_path):
  keys = make_keys(6)
  store = CorruptRecordStore({k: k.encode() for k in keys}, corrupt=[keys[3]])
  distributor = make_distributor(tmp_path, store, 4)

  wp = distributor.create_work_package()
  assert wp.num_elements == 3
  assert wp.keys() == keys[:3]
  assert distributor.records_remaining == 2

  # The last key read successfully is what gets checkpointed
  store.corrupt.add(keys[5])
  wp = distributor.create_work_package()
  assert wp.keys() == [keys[4]]
  assert distributor.last_distributed_key == keys[4]
  distributor.checkpoint_save("corrupt")
  data = PropertiesFile(str(tmp_path / "checkpoint.props"))
  assert data.get_property(CHECKPOINT_LAST_KEY) == keys[4]
  assert data.get_property_as_integer(CHECKPOINT_NUM_KEYS) == 6


def test_keys_only(tmp_path):
  keys = make_keys(3)
  distributor = make_distributor(tmp_path, MemoryRecordStore({k: b"data" for k in keys}), 3,
                                 include_values=False)
  wp = distributor.create_work_package()
  assert list(wp.records()) == [(k, b"") for k in keys]


def test_checkpoint_restore_is_idempotent(tmp_path):
  keys = make_keys(10)
  records = {k: k.encode() for k in keys}
  first_run = make_distributor(tmp_path, MemoryRecordStore(records), 3)
  first_run.create_work_package()
  first_run.create_work_package()
  first_run.checkpoint_save("Work package distributed")

  store = MemoryRecordStore(records)
  second_run = make_distributor(tmp_path, store, 3)
  second_run.checkpoint_restore()
  remaining, cursor = second_run.records_remaining, store.cursor
  second_run.checkpoint_restore()

  assert second_run.records_remaining == remaining == 4
  assert store.cursor == cursor
  assert second_run.last_distributed_key == keys[5]
  rest = []
  while True:
    wp = second_run.create_work_package()
    if wp.num_elements == 0:
      break
    rest += wp.keys()
  assert rest == keys[6:]


def test_checkpoint_restore_failure_is_raised(tmp_path):
  distributor = make_distributor(tmp_path, MemoryRecordStore({"a": b"1"}), 1)
  with pytest.raises(ObjectDoesNotExist):
    distributor.checkpoint_restore()
  assert distributor.records_remaining == 1

  (tmp_path / "checkpoint.props").write_text("Last Key = gone\nNum Keys = 1\nReason = x\n")
  distributor = make_distributor(tmp_path, MemoryRecordStore({"a": b"1"}), 1)
  with pytest.raises(ObjectDoesNotExist):
    distributor.checkpoint_restore()


def test_checkpoint_save_failure_is_not_fatal(tmp_path):
  distributor = make_distributor(tmp_path, MemoryRecordStore({"a": b"1"}), 1)
  distributor.resources.checkpoint_path = str(tmp_path / "no" / "such" / "checkpoint.props")
  distributor.create_work_package()
  distributor.checkpoint_save("Work package distributed")


def test_needs_a_record_store(tmp_path):
  props = tmp_path / "job.props"
  props.write_text("Workers Per Node = 1\nChunk Size = 2\n")
  with pytest.raises(ObjectDoesNotExist):
    RecordStoreDistributor(RecordStoreResources(str(props)), None)
