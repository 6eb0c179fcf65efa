"""
Pickle opcodes understood by the restricted unpickler and emitted by the pickler.

Only the subset needed to describe an ordered name -> tensor mapping is
listed. The byte values are those of CPython's ``pickle`` module.
"""

# Framing / control
PROTO = b"\x80"
FRAME = b"\x95"
STOP = b"."
MARK = b"("
POP = b"0"
POP_MARK = b"1"

# Constants
NONE = b"N"
NEWTRUE = b"\x88"
NEWFALSE = b"\x89"

# Numbers
BININT = b"J"
BININT1 = b"K"
BININT2 = b"M"
LONG1 = b"\x8a"
BINFLOAT = b"G"

# Strings and bytes
BINUNICODE = b"X"
SHORT_BINUNICODE = b"\x8c"
BINUNICODE8 = b"\x8d"
BINSTRING = b"T"
SHORT_BINSTRING = b"U"
BINBYTES = b"B"
SHORT_BINBYTES = b"C"

# Containers
EMPTY_TUPLE = b")"
TUPLE = b"t"
TUPLE1 = b"\x85"
TUPLE2 = b"\x86"
TUPLE3 = b"\x87"
EMPTY_LIST = b"]"
APPEND = b"a"
APPENDS = b"e"
EMPTY_DICT = b"}"
SETITEM = b"s"
SETITEMS = b"u"

# Memo
BINPUT = b"q"
LONG_BINPUT = b"r"
MEMOIZE = b"\x94"
BINGET = b"h"
LONG_BINGET = b"j"

# Objects
GLOBAL = b"c"
STACK_GLOBAL = b"\x93"
REDUCE = b"R"
BUILD = b"b"
BINPERSID = b"Q"

# Protocol written by torch.save by default
DEFAULT_PROTOCOL = 2
HIGHEST_PROTOCOL = 5

NAMES = {
    value[0]: name
    for name, value in list(globals().items())
    if name.isupper() and isinstance(value, bytes) and len(value) == 1
}


def opcode_name(code: int) -> str:
    """Readable name for an opcode byte."""
    return NAMES.get(code, f"0x{code:02x}")
