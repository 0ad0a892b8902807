import os

from errors import FileError, ObjectDoesNotExist, ParameterError, StrategyError


class PropertiesFile():
  """
  ``Key = Value`` properties stored in a text file, one per line.
  Lines starting with ``#`` and blank lines are ignored. Changes are only
  written out by ``sync()``.
  """

  def __init__(self, path, read_only=True):
    self.path = path
    self.read_only = read_only
    self.properties = {}
    if os.path.exists(path):
      self._load()
    elif read_only:
      raise FileError(f"Properties file {path} does not exist")

  def _load(self):
    try:
      with open(self.path, "r", encoding="utf-8") as f:
        lines = f.readlines()
    except OSError as e:
      raise FileError(f"Could not read {self.path}: {e}") from e

    for number, line in enumerate(lines, start=1):
      line = line.strip()
      if (not line or line.startswith("#")):
        continue
      if ("=" not in line):
        raise FileError(f"{self.path}:{number}: malformed property")
      key, value = line.split("=", 1)
      self.properties[key.strip()] = value.strip()

  def get_property(self, key):
    try:
      return self.properties[key]
    except KeyError:
      raise ObjectDoesNotExist(f"Property '{key}' not found") from None

  def get_property_as_integer(self, key):
    value = self.get_property(key)
    try:
      return int(value, 0)
    except ValueError:
      raise ParameterError(f"Property '{key}' is not an integer: {value}") from None

  def set_property(self, key, value):
    if self.read_only:
      raise StrategyError(f"{self.path} is read-only")
    self.properties[key] = str(value)

  def set_property_from_integer(self, key, value):
    self.set_property(key, str(int(value)))

  def remove_property(self, key):
    if self.read_only:
      raise StrategyError(f"{self.path} is read-only")
    self.properties.pop(key, None)

  def keys(self):
    return list(self.properties)

  def sync(self):
    if self.read_only:
      return
    tmp_path = self.path + ".tmp"
    try:
      with open(tmp_path, "w", encoding="utf-8") as f:
        for key, value in self.properties.items():
          f.write(f"{key} = {value}\n")
        f.flush()
        os.fsync(f.fileno())
      os.replace(tmp_path, self.path)
    except OSError as e:
      raise FileError(f"Could not write {self.path}: {e}") from e
