import runtime
from checkpoint import (CHECKPOINT_LAST_KEY, CHECKPOINT_NUM_KEYS, CHECKPOINT_REASON,
                        open_checkpoint_store)
from errors import ObjectDoesNotExist, TaskError
from logsheet import open_logsheet
from message import (MessageTag, TaskCommand, TaskStatus, command_to_message,
                     count_to_message, message_to_status, status_to_message)
from work_package import WorkPackage

# How long to wait for a receiver before looking at exit flags again
CONTROL_POLL_TIMEOUT = 0.1


class Distributor():
  """
  Rank 0. Answers work package requests from every receiver until the
  work runs out or an exit condition comes up, then shuts the job down.
  Subclasses say what a work package is through ``create_work_package``.
  """

  def __init__(self, resources, communicator):
    self.resources = resources
    self.communicator = communicator
    self.logsheet = None
    self.active = set()
    self.final_statuses = {}
    self.packages_distributed = 0
    self._checkpoint_data = None
    self._termination_requested = False
    self._receiver_exited = False
    self._oob_sent = None

  def get_logsheet(self):
    return self.logsheet

  def get_checkpoint_data(self):
    if self._checkpoint_data is None:
      self._checkpoint_data = open_checkpoint_store(self.resources.checkpoint_path)
    return self._checkpoint_data

  def create_work_package(self):
    raise NotImplementedError

  def is_exhausted(self):
    raise NotImplementedError

  def checkpoint_save(self, reason):
    pass

  def checkpoint_restore(self):
    pass

  def _receivers(self):
    return range(1, self.communicator.num_tasks)

  def _send_flag(self, status):
    for rank in self._receivers():
      self.communicator.send(rank, MessageTag.Control, status_to_message(status))

  def start(self, restore=False):
    self.communicator.barrier()

    failure = None
    restore_error = None
    try:
      self.logsheet = open_logsheet(self.resources.logsheet_url, "Distributor")
    except TaskError as e:
      runtime.print_status(f"Distributor failed to open log sheet ({e})")
      failure = "Failed opening Logsheet"

    if (failure is None and restore):
      try:
        self.checkpoint_restore()
      except Exception as e:
        failure = "Checkpoint restore failed"
        restore_error = e

    status = self._finish_startup(failure)
    if restore_error is not None:
      raise restore_error
    return status

  def abort(self, reason):
    # Setup failed before the job could begin. The receivers still get a
    # startup flag and a shutdown barrier so none of them waits forever.
    runtime.print_status(f"Distributor aborting: {reason}")
    self.communicator.barrier()
    return self._finish_startup(reason)

  def _finish_startup(self, failure):
    self._send_flag(TaskStatus.Failed if failure else TaskStatus.OK)

    # Every receiver sends exactly one startup status, whatever we said
    for rank in self._receivers():
      _, payload = self.communicator.recv(MessageTag.Control, rank)
      status = message_to_status(payload)
      if (status == TaskStatus.OK and failure is None):
        self.active.add(rank)
      elif status != TaskStatus.OK:
        runtime.log_message(self.logsheet, f"Task {rank} failed to start ({status.name})")

    if failure is not None:
      return self.shutdown(TaskStatus.Failed, failure)

    status = self.distribute_work()
    return self.shutdown(status, self._reason(status))

  def _reason(self, status):
    if self._termination_requested:
      return "Early exit (job termination requested)"
    if (status == TaskStatus.Exit and runtime.exit_reason()):
      return f"Early exit ({runtime.exit_reason()})"
    if status == TaskStatus.Exit:
      return "Early exit"
    if status == TaskStatus.OK:
      return "Normal end"
    return "Failed"

  def _exit_command(self):
    if runtime.TermExit:
      return TaskCommand.TermExit
    if (runtime.QuickExit or self._termination_requested):
      return TaskCommand.QuickExit
    if runtime.Exit:
      return TaskCommand.Exit
    return None

  def _send_oob(self, command):
    # Sent once per escalation level to every receiver still running
    if self._oob_sent is not None and self._oob_sent >= command:
      return
    self._oob_sent = command
    for rank in sorted(self.active):
      runtime.log_message(self.logsheet, f"Sending OOB {command.name} to task {rank}")
      self.communicator.send(rank, MessageTag.OOB, command_to_message(command))

  def distribute_work(self):
    log = self.logsheet
    while self.active:
      command = self._exit_command()
      if command in (TaskCommand.QuickExit, TaskCommand.TermExit):
        self._send_oob(command)

      found = self.communicator.recv(MessageTag.Control, timeout=CONTROL_POLL_TIMEOUT)
      if found is None:
        continue
      rank, payload = found
      status = message_to_status(payload)

      if status != TaskStatus.OK:
        # Anything but a request means that receiver is done
        runtime.log_message(log, f"Task {rank} reported {status.name}")
        self.active.discard(rank)
        if status == TaskStatus.RequestJobTermination:
          self._termination_requested = True
        elif status == TaskStatus.Exit:
          self._receiver_exited = True
        continue

      command = self._exit_command()
      if command is not None:
        runtime.log_message(log, f"Sending {command.name} to task {rank}")
        self.communicator.send(rank, MessageTag.Control, command_to_message(command))
        self.active.discard(rank)
        continue
      self.send_work_package(rank)

    if self._termination_requested:
      return TaskStatus.RequestJobTermination
    if (runtime.any_exit() or self._receiver_exited):
      return TaskStatus.Exit
    # Every receiver is gone but work is left over
    if not self.is_exhausted():
      return TaskStatus.Failed
    return TaskStatus.OK

  def send_work_package(self, rank):
    work_package = self.create_work_package()
    if work_package.num_elements == 0:
      command = TaskCommand.Exit if self.is_exhausted() else TaskCommand.Ignore
      runtime.log_message(self.logsheet, f"No work for task {rank}, sending {command.name}")
      self.communicator.send(rank, MessageTag.Control, command_to_message(command))
      if command == TaskCommand.Exit:
        self.active.discard(rank)
      return

    self.communicator.send(rank, MessageTag.Control, command_to_message(TaskCommand.Continue))
    self.communicator.send(rank, MessageTag.Data, work_package.data)
    self.communicator.send(rank, MessageTag.Data, count_to_message(work_package.num_elements))
    self.packages_distributed += 1
    runtime.log_message(self.logsheet,
      f"Sent work package of {work_package.num_elements} elements to task {rank}")
    if runtime.checkpoint_enable:
      self.checkpoint_save("Work package distributed")

  def shutdown(self, status, reason):
    log = self.logsheet
    runtime.log_message(log, f"Shutting down: {reason}")
    # Only record progress made by this run
    if (runtime.checkpoint_enable and self.packages_distributed > 0):
      self.checkpoint_save(reason)

    self.communicator.barrier()
    for rank in self._receivers():
      _, payload = self.communicator.recv(MessageTag.Control, rank)
      self.final_statuses[rank] = message_to_status(payload)
      runtime.log_message(log, f"Task {rank} final status: {self.final_statuses[rank].name}")

    runtime.print_status(f"Distributor shutting down: {reason} (status {status.name}/{int(status)})")
    if log is not None:
      log.close()
    return status


class RecordStoreDistributor(Distributor):
  # Hands out the keys (and optionally values) of a record store in chunks

  def __init__(self, resources, communicator, include_values=True):
    super().__init__(resources, communicator)
    self.include_values = include_values
    self.last_distributed_key = ""
    if not resources.have_record_store():
      raise ObjectDoesNotExist("Do not have input record store")
    self.record_store = resources.record_store
    self.records_remaining = self.record_store.get_count()

  def is_exhausted(self):
    return self.records_remaining == 0

  def create_work_package(self):
    work_package = WorkPackage()
    if (self.records_remaining == 0):
      return work_package

    key_count = min(self.records_remaining, self.resources.chunk_size)
    # Counted as distributed before reading, so a crash mid-chunk never
    # hands the same keys out twice
    self.records_remaining -= key_count

    # A key that can't be read is skipped; the package may come up short
    for _ in range(key_count):
      try:
        if self.include_values:
          key, value = self.record_store.sequence()
        else:
          key, value = self.record_store.sequence_key(), b""
      except TaskError as e:
        if self.logsheet is not None:
          self.logsheet.write_debug(f"Caught {e}")
        continue
      self.last_distributed_key = key
      work_package.append(key, value)
    return work_package

  def checkpoint_save(self, reason):
    try:
      data = self.get_checkpoint_data()
      data.set_property(CHECKPOINT_REASON, reason)
      data.set_property(CHECKPOINT_LAST_KEY, self.last_distributed_key)
      data.set_property_from_integer(CHECKPOINT_NUM_KEYS,
        self.record_store.get_count() - self.records_remaining)
      data.sync()
      if self.logsheet is not None:
        self.logsheet.write_debug(f"Checkpoint saved: {reason}")
    except Exception as e:
      # A missed checkpoint only means replaying from an older one
      if self.logsheet is not None:
        self.logsheet.write_debug(f"Checkpoint save: Caught {e}")

  def checkpoint_restore(self):
    try:
      data = self.get_checkpoint_data()
      last_key = data.get_property(CHECKPOINT_LAST_KEY)
      num_keys = data.get_property_as_integer(CHECKPOINT_NUM_KEYS)
      # Next read is the first key past the checkpoint. Nothing was handed
      # out yet if no key was recorded.
      if last_key:
        self.record_store.set_cursor_at_key(last_key)
        self.record_store.sequence_key()
      self.records_remaining = max(self.record_store.get_count() - num_keys, 0)
      self.last_distributed_key = last_key
      if self.logsheet is not None:
        self.logsheet.write_debug(f"Checkpoint restore: {data.get_property(CHECKPOINT_REASON)}")
    except Exception as e:
      if self.logsheet is not None:
        self.logsheet.write_debug(f"Checkpoint restore: Caught {e}")
      raise
