import os

from errors import FileError, ObjectDoesNotExist, ParameterError, TaskError
from properties import PropertiesFile
from record_store import open_record_store

WORKERS_PER_NODE_PROPERTY = "Workers Per Node"
LOGSHEET_URL_PROPERTY = "Logsheet URL"
CHECKPOINT_PATH_PROPERTY = "Checkpoint Path"
CHUNK_SIZE_PROPERTY = "Chunk Size"
INPUT_RECORD_STORE_PROPERTY = "Input Record Store"

NUMCPUS = "NUMCPUS"
NUMCORES = "NUMCORES"
NUMSOCKETS = "NUMSOCKETS"


def _read_cpuinfo():
  try:
    with open("/proc/cpuinfo", "r") as f:
      return f.read()
  except OSError:
    return ""


def get_cpu_count():
  return os.cpu_count() or 1


def get_cpu_core_count():
  cores = set()
  physical_id = None
  for line in _read_cpuinfo().splitlines():
    if line.startswith("physical id"):
      physical_id = line.split(":", 1)[1].strip()
    elif line.startswith("core id"):
      cores.add((physical_id, line.split(":", 1)[1].strip()))
  return len(cores) or get_cpu_count()


def get_cpu_socket_count():
  sockets = set()
  for line in _read_cpuinfo().splitlines():
    if line.startswith("physical id"):
      sockets.add(line.split(":", 1)[1].strip())
  return len(sockets) or 1


class Resources():
  # Runtime configuration for one task, read once from a properties file.

  def __init__(self, properties_file_name, rank=0, num_tasks=1, checkpoint_enable=False):
    self.properties_file_name = properties_file_name
    self.rank = rank
    self.num_tasks = num_tasks

    try:
      props = PropertiesFile(properties_file_name, read_only=True)
    except TaskError as e:
      raise FileError(f"Could not open properties: {e}") from e
    self._props = props

    try:
      workers = props.get_property(WORKERS_PER_NODE_PROPERTY)
      if workers.upper() == NUMCPUS:
        self.workers_per_node = get_cpu_count()
      elif workers.upper() == NUMCORES:
        self.workers_per_node = get_cpu_core_count()
      elif workers.upper() == NUMSOCKETS:
        self.workers_per_node = get_cpu_socket_count()
      else:
        self.workers_per_node = props.get_property_as_integer(WORKERS_PER_NODE_PROPERTY)
    except TaskError as e:
      raise ObjectDoesNotExist(f"Could not read properties: {e}") from e
    if self.workers_per_node < 0:
      raise ParameterError(f"{WORKERS_PER_NODE_PROPERTY} must not be negative")

    self.logsheet_url = self._optional(LOGSHEET_URL_PROPERTY)

    self.checkpoint_path = self._optional(CHECKPOINT_PATH_PROPERTY)
    if checkpoint_enable and not self.checkpoint_path:
      raise ObjectDoesNotExist(f"Could not read {CHECKPOINT_PATH_PROPERTY}")

  def _optional(self, key):
    try:
      return self._props.get_property(key)
    except ObjectDoesNotExist:
      return ""

  @staticmethod
  def get_required_properties():
    return [WORKERS_PER_NODE_PROPERTY]

  @staticmethod
  def get_optional_properties():
    return [LOGSHEET_URL_PROPERTY, CHECKPOINT_PATH_PROPERTY]


class RecordStoreResources(Resources):
  # Adds what a record store distribution needs. Only rank 0 opens the
  # input record store; other ranks never touch it.

  def __init__(self, properties_file_name, rank=0, num_tasks=1, checkpoint_enable=False,
               record_store=None):
    super().__init__(properties_file_name, rank, num_tasks, checkpoint_enable)

    try:
      self.chunk_size = self._props.get_property_as_integer(CHUNK_SIZE_PROPERTY)
    except TaskError as e:
      raise ObjectDoesNotExist(f"Could not read properties: {e}") from e
    if self.chunk_size <= 0:
      raise ParameterError(f"{CHUNK_SIZE_PROPERTY} must be positive")

    self.record_store_url = self._optional(INPUT_RECORD_STORE_PROPERTY)
    self.record_store = record_store
    if (self.rank == 0 and self.record_store is None and self.record_store_url):
      self.record_store = open_record_store(self.record_store_url)

  def have_record_store(self):
    return self.record_store is not None

  @staticmethod
  def get_required_properties():
    return Resources.get_required_properties() + [CHUNK_SIZE_PROPERTY]

  @staticmethod
  def get_optional_properties():
    return Resources.get_optional_properties() + [INPUT_RECORD_STORE_PROPERTY]
