import time

import zmq

from message import MessageTag

ANY_SOURCE = -1


class Communicator():
  """
  Tagged point-to-point messaging between ranks.

  Rank 0 binds a ROUTER socket and every other rank connects a DEALER
  whose identity is its rank, so rank 0 can address any rank and the
  others only talk to rank 0. Each message is ``[tag, payload]``.
  Messages that arrive for a tag or source nobody is waiting on yet are
  kept in arrival order until someone asks for them, which keeps
  messages from one peer on one tag in the order they were sent.
  """

  def __init__(self, url, rank, num_tasks, context=None):
    self.url = url
    self.rank = rank
    self.num_tasks = num_tasks
    self.context = context or zmq.Context()
    self.pending = []
    if (self.rank == 0):
      self.socket = self.context.socket(zmq.ROUTER)
      self.socket.setsockopt(zmq.ROUTER_MANDATORY, 1)
      self.socket.setsockopt(zmq.LINGER, 1000)
      self.socket.bind(url)
      self.endpoint = self.socket.getsockopt_string(zmq.LAST_ENDPOINT)
    else:
      self.socket = self.context.socket(zmq.DEALER)
      self.socket.setsockopt(zmq.IDENTITY, str(rank).encode("ascii"))
      self.socket.setsockopt(zmq.LINGER, 1000)
      self.socket.connect(url)
      self.endpoint = url
    self.poller = zmq.Poller()
    self.poller.register(self.socket, zmq.POLLIN)

  def close(self):
    self.socket.close()
    self.context.term()

  def send(self, dest, tag, payload=b""):
    frames = [str(int(tag)).encode("ascii"), bytes(payload)]
    if (self.rank == 0):
      self.socket.send_multipart([str(dest).encode("ascii")] + frames)
    else:
      self.socket.send_multipart(frames)

  def _read(self, timeout_ms):
    # Move at most one message from the socket into pending
    events = dict(self.poller.poll(timeout_ms))
    if self.socket not in events:
      return False
    frames = self.socket.recv_multipart()
    if (self.rank == 0):
      source = int(frames[0].decode("ascii"))
      frames = frames[1:]
    else:
      source = 0
    tag = MessageTag(int(frames[0].decode("ascii")))
    self.pending.append((source, tag, frames[1]))
    return True

  def _take(self, tag, source):
    for index, (src, msg_tag, payload) in enumerate(self.pending):
      if (msg_tag == tag and (source == ANY_SOURCE or src == source)):
        del self.pending[index]
        return src, payload
    return None

  def probe(self, tag, source=ANY_SOURCE):
    # Non-blocking: drain whatever has arrived, then look for a match
    while self._read(0):
      pass
    return any(msg_tag == tag and (source == ANY_SOURCE or src == source)
               for src, msg_tag, _ in self.pending)

  def recv(self, tag, source=ANY_SOURCE, timeout=None):
    """
    Receive the next message with ``tag`` (from ``source``).

    Returns ``(source, payload)``, or None when ``timeout`` seconds pass
    without a match. ``timeout=None`` waits until a match arrives.
    """
    deadline = None if timeout is None else time.monotonic() + timeout
    while True:
      found = self._take(tag, source)
      if found is not None:
        return found
      if deadline is None:
        self._read(-1)
      else:
        remaining = deadline - time.monotonic()
        if (remaining <= 0):
          return None
        self._read(int(remaining * 1000) + 1)

  def sendrecv(self, dest, send_tag, payload, recv_tag):
    self.send(dest, send_tag, payload)
    return self.recv(recv_tag, dest)[1]

  def barrier(self):
    # All ranks check in with rank 0, rank 0 releases them together
    if (self.num_tasks <= 1):
      return
    if (self.rank == 0):
      for rank in range(1, self.num_tasks):
        self.recv(MessageTag.Sync, rank)
      for rank in range(1, self.num_tasks):
        self.send(rank, MessageTag.Sync)
    else:
      self.send(0, MessageTag.Sync)
      self.recv(MessageTag.Sync, 0)
