from __future__ import annotations


_BYTE_ESCAPES: dict[int, str] = {
    0x22: '\\"',
    0x5C: "\\\\",
    0x0A: "\\n",
    0x0D: "\\r",
    0x09: "\\t",
}


def escape_asm_bytes(data: bytes) -> str:
    pieces: list[str] = []
    for byte in data:
        escaped = _BYTE_ESCAPES.get(byte)
        if escaped is not None:
            pieces.append(escaped)
        elif 0x20 <= byte <= 0x7E:
            pieces.append(chr(byte))
        else:
            # Octal keeps the following character from extending the escape.
            pieces.append(f"\\{byte:03o}")
    return "".join(pieces)


def quote_asm_string(text: str) -> str:
    return f'"{escape_asm_bytes(text.encode("utf-8"))}"'
