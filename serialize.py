import codecs

import dill


# Processors are shipped to the nodes as text: dill pickle, base64 encoded

def serialize(obj):
  return codecs.encode(dill.dumps(obj, recurse=True), "base64").decode()


def deserialize(text):
  return dill.loads(codecs.decode(text.encode(), "base64"))


def save(obj, path):
  with open(path, "w") as f:
    f.write(serialize(obj))


def load(path):
  with open(path, "r") as f:
    return deserialize(f.read())
