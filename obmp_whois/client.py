import socket
from typing import Dict, List


def send_whois_query(host: str, port: int, line: str, timeout: float = 10.0) -> str:
    """
    Sends one request line to a whois daemon and returns the full response.
    """
    client_socket = socket.create_connection((host, port), timeout=timeout)
    try:
        client_socket.sendall(line.encode() + b"\r\n")

        # Server closes the connection after the response
        response_data = b""
        while True:
            chunk = client_socket.recv(4096)
            if not chunk:
                break
            response_data += chunk

        return response_data.decode("utf-8", errors="replace")
    finally:
        client_socket.close()


def parse_records(text: str) -> List[Dict[str, str]]:
    """Splits a prefix lookup response into one label/value dict per record."""
    records: List[Dict[str, str]] = []
    current: Dict[str, str] = {}

    for raw in text.splitlines():
        line = raw.strip()
        if not line:
            if current:
                records.append(current)
                current = {}
            continue
        if line.startswith("%"):
            continue

        label, sep, value = line.partition(":")
        if not sep:
            continue
        current[label.strip()] = value.strip()

    if current:
        records.append(current)
    return records
