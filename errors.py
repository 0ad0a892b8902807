class TaskError(Exception):
  def __init__(self, info=""):
    super().__init__(info)
    self.info = info

  def __str__(self):
    return self.info


class StrategyError(TaskError):
  # An operation could not be carried out (fork failed, pipe closed, ...)
  pass


class ObjectDoesNotExist(TaskError):
  pass


class ObjectExists(TaskError):
  pass


class FileError(TaskError):
  pass


class ParameterError(TaskError):
  pass


class TerminateJob(TaskError):
  # Raised by a package processor when the whole job has to stop
  def __init__(self, info="Job termination requested"):
    super().__init__(info)
