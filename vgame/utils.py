from typing import Iterable, Optional

from web3 import Web3

ZERO_HASH = bytes(32)


def keccak(data: bytes) -> bytes:
    """Returns the keccak-256 digest of `data` as plain bytes."""
    return bytes(Web3.keccak(data))


def u256(x: int) -> bytes:
    """Big-endian 32-byte encoding of an unsigned integer, as in the EVM ABI."""
    if x < 0 or x >= 1 << 256:
        raise ValueError(f"Value out of range for uint256: {x}")
    return x.to_bytes(32, byteorder="big")


def short_hex(h: Optional[bytes], n: int = 4) -> str:
    if h is None:
        return "None"
    return h.hex()[:n]


def to_hex(h: bytes) -> str:
    return "0x" + h.hex()


def _pprint_items(title: str, items: Iterable[tuple[str, object]]) -> str:
    s = f"{title}:\n"
    for name, value in items:
        if isinstance(value, bytes):
            value = to_hex(value) if len(value) > 0 else "0x"
        s += f"  - {name}: {value}\n"
    return s


# Utilities to print the rounds of a dispute in a markdown report
def format_round_markdown(title: str, fields: dict) -> str:
    return f'''
<details><summary>{title}</summary>

```
{_pprint_items(title, fields.items())}
```

</details>

'''
