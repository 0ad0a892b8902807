import signal

import runtime
from errors import StrategyError, TaskError, TerminateJob
from fork_manager import ForkManager, Worker
from logsheet import open_logsheet
from message import (MessageTag, TaskCommand, TaskStatus, command_to_message,
                     count_to_message, message_to_command, message_to_count,
                     message_to_status, status_to_message)
from work_package import WorkPackage

# How long to wait on the worker channels before looking at exit flags again
WORKER_POLL_TIMEOUT = 0.1


class PackageWorker(Worker):
  # Runs in a forked child: asks the receiver for packages and hands them
  # to its own copy of the package processor.

  def __init__(self, processor, resources):
    super().__init__()
    self.processor = processor
    self.resources = resources
    self.logsheet = None

  def worker_main(self):
    # SIGTERM stays with the fork manager as the stop request
    runtime.install_signal_handlers(include_term=False)
    try:
      self.logsheet = open_logsheet(self.resources.logsheet_url, "Worker")
    except TaskError as e:
      runtime.print_status(f"Worker failed to open log sheet ({e})")
      return -1
    log = self.logsheet

    try:
      processor = self.processor.new_processor(self.logsheet)
    except Exception as e:
      error = f"Worker failed to create a child package processor ({e})"
      runtime.print_status(error)
      runtime.log_message(log, error)
      return -1
    if processor is None:
      error = "Worker failed to create a child package processor (package processor was None)"
      runtime.print_status(error)
      runtime.log_message(log, error)
      return -1

    status = TaskStatus.OK
    while not self.stop_requested():
      if runtime.any_exit():
        runtime.log_message(log, "Early Exit: End package requests")
        status = TaskStatus.Exit

      # Report status, which asks for more work when OK. Any other status
      # is the last thing this worker says.
      try:
        self.send_message_to_manager(status_to_message(status))
      except StrategyError as e:
        runtime.log_message(log, f"Worker send message failure: {e}")
        break
      if status != TaskStatus.OK:
        break

      try:
        if not self.wait_for_message():
          break
        command = message_to_command(self.receive_message_from_manager())
      except (StrategyError, ValueError) as e:
        runtime.log_message(log, f"Worker receive message failure: {e}")
        status = TaskStatus.Failed
        continue
      if command == TaskCommand.Ignore:
        continue
      if command != TaskCommand.Continue:
        runtime.log_message(log, f"Worker told to stop ({command.name})")
        break

      # A package follows as two messages: element count, then data
      try:
        if not self.wait_for_message():
          raise StrategyError("Stopped while waiting for work package")
        count = message_to_count(self.receive_message_from_manager())
        if not self.wait_for_message():
          raise StrategyError("Stopped while waiting for work package")
        work_package = WorkPackage(self.receive_message_from_manager(), count)
      except (StrategyError, ValueError) as e:
        runtime.log_message(log, f"Failed to receive work package: {e}")
        status = TaskStatus.Failed
        continue

      try:
        processor.process_work_package(work_package)
      except TerminateJob as e:
        runtime.log_message(log, f"Package processor wants complete job termination: {e}")
        status = TaskStatus.RequestJobTermination
      except Exception as e:
        runtime.log_message(log, f"Package processor wants shutdown: {e}")
        status = TaskStatus.Failed

    del processor
    runtime.log_message(log, "Worker process exiting")
    self.logsheet.close()
    return 0


class Receiver():
  """
  The task on every rank but 0. Pulls work packages from the distributor
  and hands each one to an idle local worker process.
  """

  def __init__(self, resources, processor, communicator):
    self.resources = resources
    self.processor = processor
    self.communicator = communicator
    self.process_manager = ForkManager()
    self.logsheet = None
    self._idle_worker = None

  def _send_status(self, status):
    self.communicator.send(0, MessageTag.Control, status_to_message(status))

  def start(self):
    # Release the other tasks to start up
    self.communicator.barrier()

    try:
      self.logsheet = open_logsheet(self.resources.logsheet_url, "Receiver")
    except TaskError as e:
      runtime.print_status(f"Receiver failed to open log sheet ({e})")
      self._send_status(TaskStatus.Failed)
      return self.shutdown(TaskStatus.Failed, "Failed opening Logsheet")
    log = self.logsheet

    runtime.log_message(log, "Wait for startup message")
    _, flag = self.communicator.recv(MessageTag.Control, 0)
    if (message_to_status(flag) == TaskStatus.Failed):
      self._send_status(TaskStatus.OK)
      return self.shutdown(TaskStatus.OK, "Distributor says abort")

    try:
      self.processor.perform_initialization(self.logsheet)
    except Exception as e:
      runtime.log_message(log, f"Could not initialize package processor: {e}")
      self._send_status(TaskStatus.Failed)
      return self.shutdown(TaskStatus.Failed, "Failed perform_initialization()")

    self.start_workers()
    if (self.process_manager.get_num_active_workers() == 0):
      self._send_status(TaskStatus.Failed)
      return self.shutdown(TaskStatus.Failed, "No workers")
    self._send_status(TaskStatus.OK)

    status = self.request_work_packages()
    if status == TaskStatus.OK:
      reason = "Normal end"
    elif status == TaskStatus.Exit:
      reason = "Early exit"
      if runtime.exit_reason():
        reason += f" ({runtime.exit_reason()})"
    elif status == TaskStatus.RequestJobTermination:
      reason = "Early exit (job termination requested)"
    else:
      reason = "Failed"
    return self.shutdown(status, reason)

  def abort(self, reason):
    # Setup failed before the job could begin; still go through startup
    # and shutdown with rank 0 so it is not left waiting for this task
    self.communicator.barrier()
    self.communicator.recv(MessageTag.Control, 0)
    self._send_status(TaskStatus.Failed)
    return self.shutdown(TaskStatus.Failed, reason)

  def start_workers(self):
    for _ in range(self.resources.workers_per_node):
      wc = self.process_manager.add_worker(PackageWorker(self.processor, self.resources))
      try:
        self.process_manager.start_worker(wc, False, True)
      except TaskError as e:
        runtime.log_message(self.logsheet, f"Worker start failed: {e}")

  def _check_oob(self):
    # Rank 0 can tell us to drop everything at any time
    while self.communicator.probe(MessageTag.OOB, 0):
      _, payload = self.communicator.recv(MessageTag.OOB, 0)
      command = message_to_command(payload)
      if command == TaskCommand.QuickExit:
        runtime.log_message(self.logsheet, "OOB Quick Exit received")
        runtime.set_quick_exit()
      elif command == TaskCommand.TermExit:
        runtime.log_message(self.logsheet, "OOB Term Exit received")
        runtime.set_term_exit()
      elif command == TaskCommand.Exit:
        runtime.log_message(self.logsheet, "OOB Exit received")
        runtime.set_exit()

  def _stop_worker(self, worker):
    try:
      self.process_manager.stop_worker(worker)
    except TaskError as e:
      runtime.log_message(self.logsheet, f"Stopping worker: Caught: {e}")

  def _reserve_worker(self, stop_on_exit=True):
    """
    Find a worker that reported OK and is now waiting for a command.
    Workers reporting anything else are stopped and passed over.

    Returns None if an exit condition came up while waiting, raises
    TerminateJob if a worker asked for job termination and StrategyError
    when no workers are left.
    """
    while self._idle_worker is None:
      if (self.process_manager.get_num_active_workers() == 0):
        raise StrategyError("No workers")
      self._check_oob()
      if (runtime.QuickExit or runtime.TermExit or (stop_on_exit and runtime.Exit)):
        return None

      found = self.process_manager.get_next_message(WORKER_POLL_TIMEOUT)
      if found is None:
        continue
      worker, message = found
      try:
        status = message_to_status(message)
      except ValueError:
        status = TaskStatus.Failed

      if status == TaskStatus.RequestJobTermination:
        self._stop_worker(worker)
        raise TerminateJob(f"Worker {worker.pid} requested job termination")
      if status != TaskStatus.OK:
        runtime.log_message(self.logsheet, f"Worker {worker.pid} reported {status.name}, stopping it")
        self._stop_worker(worker)
        continue
      self._idle_worker = worker
    return self._idle_worker

  def send_work_package(self, work_package):
    try:
      worker = self._reserve_worker(stop_on_exit=False)
    except StrategyError:
      runtime.log_message(self.logsheet,
        f"No workers left, work package of {work_package.num_elements} elements lost")
      raise
    if worker is None:
      runtime.log_message(self.logsheet, "Exit condition, work package not sent")
      return
    self._idle_worker = None

    worker.send_message_to_worker(command_to_message(TaskCommand.Continue))
    worker.send_message_to_worker(count_to_message(work_package.num_elements))
    worker.send_message_to_worker(work_package.data)
    runtime.log_message(self.logsheet,
      f"Sent work package of size {work_package.size} to worker {worker.pid}")

  def request_work_packages(self):
    log = self.logsheet
    status = TaskStatus.OK

    while True:
      self._check_oob()

      # Local exit conditions: tell the workers when it can't wait, and in
      # all cases tell rank 0 we are done.
      if runtime.TermExit:
        runtime.log_message(log, "Termination Exit signal")
        self.process_manager.broadcast_signal(signal.SIGKILL)
        self._send_status(TaskStatus.Exit)
        status = TaskStatus.Exit
        break
      if runtime.QuickExit:
        runtime.log_message(log, "Quick Exit signal")
        self.process_manager.broadcast_signal(signal.SIGINT)
        self._send_status(TaskStatus.Exit)
        status = TaskStatus.Exit
        break
      if runtime.Exit:
        runtime.log_message(log, "Exit signal")
        self._send_status(TaskStatus.Exit)
        status = TaskStatus.Exit
        break

      # Only ask for a package once a worker is ready to take it
      try:
        worker = self._reserve_worker()
      except TerminateJob as e:
        runtime.log_message(log, f"Package processor requested job termination: {e}")
        self._send_status(TaskStatus.RequestJobTermination)
        self.process_manager.broadcast_signal(signal.SIGINT)
        status = TaskStatus.RequestJobTermination
        break
      except TaskError as e:
        runtime.log_message(log, f"Failure to process work package: {e}")
        self._send_status(TaskStatus.Failed)
        status = TaskStatus.Failed
        break
      if worker is None:
        continue

      runtime.log_message(log, "Asking for work package")
      reply = self.communicator.sendrecv(0, MessageTag.Control,
        status_to_message(TaskStatus.OK), MessageTag.Control)
      command = message_to_command(reply)
      runtime.log_message(log, f"{command.name} command")
      if command == TaskCommand.Ignore:
        continue
      if command == TaskCommand.Exit:
        break
      if command == TaskCommand.QuickExit:
        runtime.set_quick_exit()
        self.process_manager.broadcast_signal(signal.SIGINT)
        status = TaskStatus.Exit
        break
      if command == TaskCommand.TermExit:
        runtime.set_term_exit()
        self.process_manager.broadcast_signal(signal.SIGKILL)
        status = TaskStatus.Exit
        break

      # The package arrives as raw data first, element count second
      _, raw = self.communicator.recv(MessageTag.Data, 0)
      _, count = self.communicator.recv(MessageTag.Data, 0)
      work_package = WorkPackage(raw, message_to_count(count))
      try:
        self.send_work_package(work_package)
      except TaskError as e:
        runtime.log_message(log, f"Failure to process work package: {e}")
        self._send_status(TaskStatus.Failed)
        status = TaskStatus.Failed
        break
    return status

  def shutdown(self, status, reason):
    log = self.logsheet
    runtime.log_message(log, f"Shutting down: {reason}")
    runtime.print_status(f"Rank {self.communicator.rank} shutting down: {reason} "
                         f"(status {status.name}/{int(status)})")

    # After a Term Exit the workers were killed; nothing to talk to
    if not runtime.TermExit and self.process_manager.get_num_active_workers() > 0:
      runtime.log_message(log, "Stopping workers")
      for worker in self.process_manager.get_workers():
        if worker.is_working():
          self._stop_worker(worker)
    self._idle_worker = None
    self.process_manager.wait_for_worker_exit()

    if self.processor is not None:
      try:
        self.processor.perform_shutdown()
      except Exception as e:
        runtime.log_message(log, f"Could not shutdown package processor: {e}")

    # Rank 0 may still be sending to others; meet there before the final word
    self.communicator.barrier()
    runtime.log_message(log, f"Sending final message: {status.name} ({reason})")
    self._send_status(status)
    self.process_manager.close()
    if log is not None:
      log.close()
    return status
