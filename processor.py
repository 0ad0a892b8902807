class WorkPackageProcessor():
  # perform_initialization and perform_shutdown run once in the receiver.
  # Each forked worker gets its own copy from new_processor.
  # process_work_package raises TerminateJob to stop the whole job; any
  # other error only stops the worker that raised it.

  def perform_initialization(self, logsheet):
    pass

  def new_processor(self, logsheet):
    raise NotImplementedError

  def process_work_package(self, work_package):
    raise NotImplementedError

  def perform_shutdown(self):
    pass
