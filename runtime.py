import os
import signal
import sys

# Process-wide exit conditions. They are only ever set, never cleared,
# and every distributor, receiver and worker loop checks them on each pass.
#   Exit      - finish in-flight work, stop asking for more
#   QuickExit - interrupt all workers and stop now
#   TermExit  - kill all workers, no further communication with them
Exit = False
QuickExit = False
TermExit = False

# Checkpoint data is only saved (and the checkpoint path only required)
# when this is turned on before the task starts.
checkpoint_enable = False

PROGRAM_NAME = "recdist"


def set_exit():
  global Exit
  Exit = True


def set_quick_exit():
  global QuickExit
  QuickExit = True


def set_term_exit():
  global TermExit
  TermExit = True


def any_exit():
  return Exit or QuickExit or TermExit


def exit_reason():
  if TermExit:
    return "Term Exit"
  if QuickExit:
    return "Quick Exit"
  if Exit:
    return "Exit"
  return ""


def _exit_handler(signo, frame):
  # Only flips a flag; safe to run at any point in the main loop
  if signo == signal.SIGQUIT:
    set_exit()
  elif signo == signal.SIGINT:
    set_quick_exit()
  elif signo == signal.SIGTERM:
    set_term_exit()


def install_signal_handlers(include_term=True):
  signal.signal(signal.SIGQUIT, _exit_handler)
  signal.signal(signal.SIGINT, _exit_handler)
  if (include_term):
    signal.signal(signal.SIGTERM, _exit_handler)


def print_status(text):
  print(f"[{PROGRAM_NAME} {os.getpid()}] {text}")
  sys.stdout.flush()


def log_message(logsheet, text):
  if logsheet is None:
    return
  try:
    logsheet.write(text)
  except OSError as e:
    print_status(f"Could not write to logsheet ({e})")
