import multiprocessing
import multiprocessing.connection
import os
import signal
import sys
import time
import traceback

from errors import ObjectDoesNotExist, ObjectExists, StrategyError

# Every live ForkManager in this process. One SIGCHLD handler serves all of
# them and each only reaps the children it forked itself.
FORK_MANAGERS = []

WAIT_POLL_INTERVAL = 0.1


def _reap(signo, frame):
  for manager in list(FORK_MANAGERS):
    manager._reap_children()


class Worker():
  # Work done in a forked child; worker_main returns its exit code.
  # The message helpers only work inside the child, and only when it was
  # started with communicate=True.

  def __init__(self):
    self._stop_requested = False
    self._connection = None

  def worker_main(self):
    raise NotImplementedError

  def stop_requested(self):
    return self._stop_requested

  def request_stop(self):
    self._stop_requested = True

  def send_message_to_manager(self, message):
    if self._connection is None:
      raise StrategyError("No communication channel to manager")
    try:
      self._connection.send_bytes(bytes(message))
    except (OSError, ValueError) as e:
      raise StrategyError(f"Could not send to manager: {e}") from e

  def receive_message_from_manager(self):
    if self._connection is None:
      raise StrategyError("No communication channel to manager")
    try:
      return self._connection.recv_bytes()
    except (EOFError, OSError) as e:
      raise StrategyError(f"Could not receive from manager: {e}") from e

  # False if stopped or timed out with nothing to read. A message already
  # sent is still delivered after a stop request.
  def wait_for_message(self, timeout=None):
    if self._connection is None:
      raise StrategyError("No communication channel to manager")
    deadline = None if timeout is None else time.monotonic() + timeout
    while True:
      interval = WAIT_POLL_INTERVAL
      if deadline is not None:
        interval = max(0, min(interval, deadline - time.monotonic()))
      if self._connection.poll(interval):
        return True
      if self.stop_requested():
        return False
      if deadline is not None and time.monotonic() >= deadline:
        return False


class WorkerStatus():
  def __init__(self, pid=0, is_working=False):
    self.pid = pid
    self.is_working = is_working


class ForkWorkerController():
  # Parent-side handle for one Worker run in a forked child

  def __init__(self, worker):
    self.worker = worker
    self.pid = 0
    self.exit_status = None
    self._status = None
    self._ever_worked = False
    self._connection = None

  def __repr__(self):
    return f"<ForkWorkerController pid={self.pid} working={self.is_working()}>"

  def is_working(self):
    return self._status is not None and self._status.is_working

  def ever_worked(self):
    return self._ever_worked

  def get_pid(self):
    return self.pid

  def reset(self):
    if self.is_working():
      raise ObjectExists(f"Worker {self.pid} is still working")
    self.pid = 0
    self.exit_status = None
    self._ever_worked = False
    if self._connection is not None:
      self._connection.close()
      self._connection = None

  def send_message_to_worker(self, message):
    if self._connection is None:
      raise StrategyError(f"No communication channel to worker {self.pid}")
    try:
      self._connection.send_bytes(bytes(message))
    except (OSError, ValueError) as e:
      raise StrategyError(f"Could not send to worker {self.pid}: {e}") from e

  def _start(self, communicate):
    parent_end = child_end = None
    if communicate:
      parent_end, child_end = multiprocessing.Pipe(duplex=True)

    try:
      pid = os.fork()
    except OSError as e:
      if parent_end is not None:
        parent_end.close()
        child_end.close()
      raise StrategyError(f"Could not fork: {e}") from e

    if (pid == 0):
      self._run_child(child_end, parent_end)

    if child_end is not None:
      child_end.close()
    if self._connection is not None:
      self._connection.close()
    self._connection = parent_end
    self.pid = pid
    self.exit_status = None
    self._ever_worked = True
    return pid

  def _run_child(self, connection, parent_end):
    # Drop everything that belongs to the parent: its reaping, and the
    # manager ends of every channel, so sibling workers see EOF when the
    # parent goes away.
    for manager in FORK_MANAGERS:
      manager._close_connections()
    del FORK_MANAGERS[:]
    if parent_end is not None:
      parent_end.close()
    signal.signal(signal.SIGCHLD, signal.SIG_DFL)
    signal.pthread_sigmask(signal.SIG_UNBLOCK, {signal.SIGCHLD})
    signal.signal(signal.SIGTERM, self._stop_handler)

    self.worker._connection = connection
    code = 1
    try:
      code = self.worker.worker_main() or 0
    except SystemExit as e:
      code = e.code if isinstance(e.code, int) else 1
    except BaseException:
      traceback.print_exc()
      code = 1
    finally:
      sys.stdout.flush()
      sys.stderr.flush()
      os._exit(code & 0xff)

  def _stop_handler(self, signo, frame):
    self.worker.request_stop()

  def _stop(self):
    try:
      os.kill(self.pid, signal.SIGTERM)
    except ProcessLookupError as e:
      raise StrategyError(f"Could not stop worker {self.pid}: {e}") from e


class ForkManager():
  # Starts Workers in forked children and keeps track of them. Each
  # manager only reaps the pids it forked itself.

  def __init__(self):
    self._wc_status = {}
    self._exit_callback = None
    if signal.getsignal(signal.SIGCHLD) is not _reap:
      signal.signal(signal.SIGCHLD, _reap)
    FORK_MANAGERS.append(self)

  def close(self):
    if self in FORK_MANAGERS:
      FORK_MANAGERS.remove(self)
    self._close_connections()

  def _close_connections(self):
    for wc in self._wc_status:
      if wc._connection is not None:
        wc._connection.close()
        wc._connection = None

  def add_worker(self, worker):
    for wc in self._wc_status:
      if wc.worker is worker:
        raise ObjectExists("Worker is already managed")
    wc = ForkWorkerController(worker)
    status = WorkerStatus()
    wc._status = status
    self._wc_status[wc] = status
    return wc

  def get_workers(self):
    return list(self._wc_status)

  def start_workers(self, wait=True, communicate=False):
    for wc in list(self._wc_status):
      self.start_worker(wc, False, communicate)
    if wait:
      self.wait_for_worker_exit()

  def start_worker(self, wc, wait=True, communicate=False):
    if wc not in self._wc_status:
      raise ObjectDoesNotExist("Worker is not managed here")
    if wc.is_working():
      raise ObjectExists(f"Worker {wc.pid} is already working")

    # Hold SIGCHLD until the status record knows the new pid, otherwise a
    # child exiting right away could not be matched when reaped.
    signal.pthread_sigmask(signal.SIG_BLOCK, {signal.SIGCHLD})
    try:
      pid = wc._start(communicate)
      status = self._wc_status[wc]
      status.pid = pid
      status.is_working = True
    finally:
      signal.pthread_sigmask(signal.SIG_UNBLOCK, {signal.SIGCHLD})

    if wait:
      self.wait_for_worker_exit()

  def stop_worker(self, wc):
    if wc not in self._wc_status:
      raise ObjectDoesNotExist("Worker is not managed here")
    if not wc.is_working():
      raise StrategyError(f"Worker {wc.pid} is not working")
    wc._stop()

  def broadcast_signal(self, signo):
    for status in list(self._wc_status.values()):
      if not status.is_working:
        continue
      try:
        os.kill(status.pid, signo)
      except ProcessLookupError:
        pass

  # (controller, message) from any working child, or None after timeout
  def get_next_message(self, timeout=None):
    connections = {}
    for wc in self._wc_status:
      if wc.is_working() and wc._connection is not None:
        connections[wc._connection] = wc
    if not connections:
      # Children still being reaped; keep the caller's pacing
      if timeout:
        time.sleep(timeout)
      return None

    for connection in multiprocessing.connection.wait(list(connections), timeout):
      wc = connections[connection]
      try:
        return wc, connection.recv_bytes()
      except (EOFError, OSError):
        # The child closed its end and is on its way out
        connection.close()
        wc._connection = None
    return None

  def wait_for_worker_exit(self):
    for wc, status in list(self._wc_status.items()):
      while status.is_working:
        try:
          pid, wait_status = os.waitpid(status.pid, 0)
        except ChildProcessError:
          # Already reaped by the SIGCHLD handler
          status.is_working = False
          break
        if (pid == status.pid):
          self.set_exit_status(pid, wait_status)

  def _reap_children(self):
    for wc, status in list(self._wc_status.items()):
      if not status.is_working:
        continue
      try:
        pid, wait_status = os.waitpid(status.pid, os.WNOHANG)
      except ChildProcessError:
        status.is_working = False
        continue
      if (pid == status.pid):
        self.set_exit_status(pid, wait_status)

  def _get_process_with_pid(self, pid):
    for wc, status in self._wc_status.items():
      if (status.pid != 0 and status.pid == pid):
        return wc, status
    raise ObjectDoesNotExist(f"No worker with pid {pid}")

  def responsible_for(self, pid):
    return any(status.pid == pid for status in self._wc_status.values() if status.pid != 0)

  def set_not_working(self, pid):
    wc, status = self._get_process_with_pid(pid)
    status.is_working = False

  def set_exit_status(self, pid, wait_status):
    wc, status = self._get_process_with_pid(pid)
    status.is_working = False
    wc.exit_status = os.waitstatus_to_exitcode(wait_status)
    if self._exit_callback is not None:
      self._exit_callback(wc, wait_status)

  def get_is_working_status(self, pid):
    wc, status = self._get_process_with_pid(pid)
    return status.is_working

  def mark_all_finished(self):
    for status in self._wc_status.values():
      status.is_working = False

  def set_exit_callback(self, callback):
    # callback(controller, wait_status), called when a child is reaped
    self._exit_callback = callback

  def get_num_total_workers(self):
    return len(self._wc_status)

  def get_num_active_workers(self):
    return sum(1 for status in self._wc_status.values() if status.is_working)

  def get_num_completed_workers(self):
    return sum(1 for wc, status in self._wc_status.items()
               if wc.ever_worked() and not status.is_working)
