import struct

# Each record: key length (uint32), value size (uint64), key bytes, value bytes
RECORD_HEADER = struct.Struct("<IQ")

# Keys are any bytes. They are handed out as str, with bytes that are not
# UTF-8 kept as surrogates, so encoding a key again gives the same bytes.
KEY_ENCODING = "utf-8"
KEY_ERRORS = "surrogateescape"


def key_to_bytes(key):
  if isinstance(key, str):
    return key.encode(KEY_ENCODING, KEY_ERRORS)
  return bytes(key)


class WorkPackage():
  # A batch of packed key/value records plus the number of records.
  # Data and count travel as separate messages.

  def __init__(self, data=b"", num_elements=0):
    self.data = bytearray(data)
    self.num_elements = num_elements

  def __len__(self):
    return self.num_elements

  @property
  def size(self):
    return len(self.data)

  def append(self, key, value=b""):
    key = key_to_bytes(key)
    value = bytes(value or b"")
    self.data += RECORD_HEADER.pack(len(key), len(value))
    self.data += key
    self.data += value
    self.num_elements += 1

  # Yields (key, value) pairs in packing order
  def records(self):
    view = memoryview(self.data)
    index = 0
    for n in range(self.num_elements):
      if (index + RECORD_HEADER.size > len(view)):
        raise ValueError(f"Work package truncated at record {n}")
      key_length, value_size = RECORD_HEADER.unpack_from(view, index)
      index += RECORD_HEADER.size
      end = index + key_length + value_size
      if (end > len(view)):
        raise ValueError(f"Work package truncated at record {n}")
      key = bytes(view[index:index + key_length]).decode(KEY_ENCODING, KEY_ERRORS)
      index += key_length
      value = bytes(view[index:end])
      index = end
      yield key, value

  def keys(self):
    return [key for key, _ in self.records()]

  def __iter__(self):
    return self.records()
