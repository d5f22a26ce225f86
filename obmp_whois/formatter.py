from typing import Any

LABEL_WIDTH = 20


def fmt_result_item(label: str, value: Any) -> str:
    """Formats one labeled result line, or returns "" when the value is empty.

    The label and colon are left justified to LABEL_WIDTH columns; existing
    clients depend on this layout byte for byte.
    """
    value_str = "" if value is None else str(value)
    if len(value_str) <= 0:
        return ""

    return f"{label + ':':<{LABEL_WIDTH}} {value_str.strip()}\r\n"
