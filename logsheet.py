import logging
import os
from urllib.parse import urlparse

from errors import FileError, ParameterError

ENTRY_FORMAT = "%(asctime)s %(description)s (pid %(process)d): %(message)s"


class Logsheet():
  # A log sink for one task. Entries are single lines; a logsheet opened
  # without a URL accepts entries and drops them.

  def __init__(self, description, path=None):
    self.description = description
    self.path = path
    self.logger = logging.getLogger(f"recdist.{description}.{os.getpid()}.{id(self)}")
    self.logger.setLevel(logging.DEBUG)
    self.logger.propagate = False
    self.handler = logging.NullHandler()
    if path is not None:
      try:
        self.handler = logging.FileHandler(path, mode="a", encoding="utf-8")
      except OSError as e:
        raise FileError(f"Could not open logsheet {path}: {e}") from e
      self.handler.setFormatter(logging.Formatter(ENTRY_FORMAT))
    self.logger.addHandler(self.handler)
    self._extra = {"description": description}

  def write(self, text):
    self.logger.info(text, extra=self._extra)
    self.handler.flush()

  def write_debug(self, text):
    self.logger.debug(text, extra=self._extra)
    self.handler.flush()

  def close(self):
    self.logger.removeHandler(self.handler)
    self.handler.close()


def open_logsheet(url, description):
  if not url:
    return Logsheet(description)

  parsed = urlparse(url)
  if parsed.scheme == "file":
    path = parsed.path
  elif parsed.scheme == "":
    path = url
  else:
    raise ParameterError(f"Unsupported logsheet URL: {url}")
  return Logsheet(description, path)
