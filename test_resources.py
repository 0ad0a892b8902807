import os

import pytest

from errors import FileError, ObjectDoesNotExist, ParameterError, StrategyError
from logsheet import open_logsheet
from properties import PropertiesFile
from record_store import DirectoryRecordStore, MemoryRecordStore
from resources import (RecordStoreResources, Resources, get_cpu_count,
                       get_cpu_core_count, get_cpu_socket_count)


def write_props(path, **values):
  names = {
    "workers": "Workers Per Node",
    "logsheet": "Logsheet URL",
    "checkpoint": "Checkpoint Path",
    "chunk": "Chunk Size",
    "store": "Input Record Store",
  }
  with open(path, "w") as f:
    f.write("# test properties\n\n")
    for key, value in values.items():
      f.write(f"{names[key]} = {value}\n")
  return str(path)


def test_properties_file_round_trip(tmp_path):
  path = str(tmp_path / "data.props")
  props = PropertiesFile(path, read_only=False)
  props.set_property("Reason", "Work package distributed")
  props.set_property_from_integer("Num Keys", 42)
  props.sync()

  again = PropertiesFile(path)
  assert again.get_property("Reason") == "Work package distributed"
  assert again.get_property_as_integer("Num Keys") == 42
  with pytest.raises(ObjectDoesNotExist):
    again.get_property("Last Key")


def test_properties_file_errors(tmp_path):
  with pytest.raises(FileError):
    PropertiesFile(str(tmp_path / "missing.props"))

  path = write_props(tmp_path / "job.props", workers="many")
  props = PropertiesFile(path)
  with pytest.raises(ParameterError):
    props.get_property_as_integer("Workers Per Node")
  with pytest.raises(StrategyError):
    props.set_property("Workers Per Node", 2)

  bad = tmp_path / "bad.props"
  bad.write_text("no equals sign here\n")
  with pytest.raises(FileError):
    PropertiesFile(str(bad))


def test_resources(tmp_path):
  path = write_props(tmp_path / "job.props", workers=3, logsheet="file:///tmp/x.log")
  resources = Resources(path, rank=2, num_tasks=4)
  assert resources.workers_per_node == 3
  assert resources.logsheet_url == "file:///tmp/x.log"
  assert resources.checkpoint_path == ""
  assert resources.rank == 2
  assert resources.num_tasks == 4


def test_workers_per_node_keywords(tmp_path):
  assert Resources(write_props(tmp_path / "a.props", workers="NUMCPUS")).workers_per_node == get_cpu_count()
  assert Resources(write_props(tmp_path / "b.props", workers="numcores")).workers_per_node == get_cpu_core_count()
  assert Resources(write_props(tmp_path / "c.props", workers="NumSockets")).workers_per_node == get_cpu_socket_count()
  assert get_cpu_core_count() >= 1
  assert get_cpu_socket_count() >= 1


def test_required_properties(tmp_path):
  with pytest.raises(ObjectDoesNotExist):
    Resources(write_props(tmp_path / "a.props", logsheet="x.log"))
  with pytest.raises(FileError):
    Resources(str(tmp_path / "none.props"))

  # Checkpoint path only matters when checkpointing
  path = write_props(tmp_path / "b.props", workers=1)
  Resources(path)
  with pytest.raises(ObjectDoesNotExist):
    Resources(path, checkpoint_enable=True)

  assert Resources.get_required_properties() == ["Workers Per Node"]
  assert "Chunk Size" in RecordStoreResources.get_required_properties()
  assert "Input Record Store" in RecordStoreResources.get_optional_properties()


def test_record_store_resources(tmp_path):
  store = MemoryRecordStore({"a": b"1"})
  path = write_props(tmp_path / "a.props", workers=1, chunk=16)
  resources = RecordStoreResources(path, record_store=store)
  assert resources.chunk_size == 16
  assert resources.record_store is store

  # Only rank 0 opens the input record store
  records = tmp_path / "records"
  records.mkdir()
  (records / "k1").write_bytes(b"v1")
  path = write_props(tmp_path / "b.props", workers=1, chunk=2, store=str(records))
  assert isinstance(RecordStoreResources(path).record_store, DirectoryRecordStore)
  assert not RecordStoreResources(path, rank=1, num_tasks=2).have_record_store()

  with pytest.raises(ParameterError):
    RecordStoreResources(write_props(tmp_path / "c.props", workers=1, chunk=0))
  with pytest.raises(ObjectDoesNotExist):
    RecordStoreResources(write_props(tmp_path / "d.props", workers=1))


def test_logsheet(tmp_path):
  path = tmp_path / "job.log"
  log = open_logsheet(f"file://{path}", "Receiver")
  log.write("Asking for work package")
  log.write_debug("Caught something")
  log.close()
  text = path.read_text()
  assert "Receiver (pid %d): Asking for work package" % os.getpid() in text
  assert "Caught something" in text

  # No URL means entries go nowhere
  quiet = open_logsheet("", "Worker")
  quiet.write("dropped")
  quiet.close()

  with pytest.raises(ParameterError):
    open_logsheet("gopher://host/log", "Worker")
  with pytest.raises(FileError):
    open_logsheet(str(tmp_path / "no" / "such" / "dir.log"), "Worker")
