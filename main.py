import argparse
import importlib
import subprocess
import sys

import runtime
import serialize
from distributor import Distributor, RecordStoreDistributor
from errors import TaskError
from message import TaskStatus
from receiver import Receiver
from resources import RecordStoreResources
from transport import Communicator


def load_processor(args):
  if args.processor:
    return serialize.load(args.processor)
  if args.processor_class:
    module_name, _, class_name = args.processor_class.partition(":")
    module = importlib.import_module(module_name)
    return getattr(module, class_name)()
  return None


def run_distributor(args, communicator):
  try:
    resources = RecordStoreResources(args.p, args.r, args.n, args.checkpoint or args.restore)
    distributor = RecordStoreDistributor(resources, communicator, not args.keys_only)
  except TaskError as e:
    runtime.print_status(f"Rank 0: could not set up distribution ({e})")
    return Distributor(None, communicator).abort("Failed reading resources")
  return distributor.start(restore=args.restore)


def run_receiver(args, communicator):
  try:
    resources = RecordStoreResources(args.p, args.r, args.n)
  except TaskError as e:
    runtime.print_status(f"Rank {args.r}: could not read resources ({e})")
    return Receiver(None, None, communicator).abort("Failed reading resources")

  try:
    processor = load_processor(args)
  except Exception as e:
    runtime.print_status(f"Rank {args.r}: could not load package processor ({e})")
    processor = None
  if processor is None:
    return Receiver(resources, None, communicator).abort("No package processor")
  return Receiver(resources, processor, communicator).start()


def run_rank(args):
  runtime.install_signal_handlers()
  runtime.checkpoint_enable = args.checkpoint

  # Connected first, so a failing rank can still tell the others
  communicator = Communicator(args.u, args.r, args.n)
  try:
    if (args.r == 0):
      status = run_distributor(args, communicator)
    else:
      status = run_receiver(args, communicator)
  finally:
    communicator.close()
  return 0 if status == TaskStatus.OK else 1


def launch_local(args):
  # Ranks 1..n-1 as subprocesses of this one, rank 0 in the foreground
  children = []
  for rank in range(1, args.local):
    command = [sys.executable, __file__, "-r", str(rank), "-n", str(args.local),
               "-u", args.u, "-p", args.p]
    if args.processor:
      command += ["--processor", args.processor]
    if args.processor_class:
      command += ["--processor-class", args.processor_class]
    children.append(subprocess.Popen(command))

  args.r = 0
  args.n = args.local
  code = run_rank(args)
  for child in children:
    if child.wait() != 0:
      code = 1
  return code


def main():
  parser = argparse.ArgumentParser(description="Distribute record store work packages")
  parser.add_argument('-r', type=int, default=0, help="rank of this task (0 is the distributor)")
  parser.add_argument('-n', type=int, default=1, help="number of tasks in the job")
  parser.add_argument('-u', type=str, default='tcp://127.0.0.1:5500', help="distributor endpoint")
  parser.add_argument('-p', type=str, required=True, help="properties file")
  parser.add_argument('--processor', type=str, help="file holding a serialized package processor")
  parser.add_argument('--processor-class', type=str, help="package processor as module:Class")
  parser.add_argument('--checkpoint', action='store_true', help="save checkpoints while distributing")
  parser.add_argument('--restore', action='store_true', help="resume from the saved checkpoint")
  parser.add_argument('--keys-only', action='store_true', help="distribute keys without values")
  parser.add_argument('--local', type=int, default=0, help="run a whole job of this many tasks here")
  args = parser.parse_args()

  if (args.local > 0):
    sys.exit(launch_local(args))
  sys.exit(run_rank(args))


if __name__ == '__main__':
  main()
