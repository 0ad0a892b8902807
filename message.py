import struct
from enum import IntEnum


class TaskStatus(IntEnum):
  # Sent upstream: worker -> receiver -> distributor
  OK = 0
  Exit = 1
  Failed = 2
  RequestJobTermination = 3


class TaskCommand(IntEnum):
  # Sent downstream: distributor -> receiver -> worker
  Continue = 0
  Ignore = 1
  Exit = 2
  QuickExit = 3
  TermExit = 4


class MessageTag(IntEnum):
  Control = 0
  Data = 1
  OOB = 2
  Sync = 3


# Status and command codes go over the wire as decimal integer strings.
# The numeric values above are the wire contract and must not change.

def status_to_message(status):
  return str(int(status)).encode("ascii")


def message_to_status(message):
  return TaskStatus(int(bytes(message).decode("ascii")))


def command_to_message(command):
  return str(int(command)).encode("ascii")


def message_to_command(message):
  return TaskCommand(int(bytes(message).decode("ascii")))


COUNT_FORMAT = "<Q"

def count_to_message(count):
  return struct.pack(COUNT_FORMAT, count)


def message_to_count(message):
  return struct.unpack(COUNT_FORMAT, bytes(message))[0]
