"""
Port Selector：为 dev server 挑选第一个可用端口（无状态，可重复调用）
"""
import socket
from typing import Iterator, Literal

from prepbuild.pipeline.core.errors import NoPortAvailable
from prepbuild.utils.logger import debug

Direction = Literal["up", "down"]

MIN_PORT = 1
MAX_PORT = 65535


def port_range(start: int, count: int, direction: Direction = "down") -> Iterator[int]:
    """按方向生成候选端口：down → start, start-1, ...；up → start, start+1, ...（越界即停止）"""
    if direction not in ("up", "down"):
        raise ValueError(f"Invalid scan direction: {direction!r}")
    step = 1 if direction == "up" else -1
    for i in range(max(count, 0)):
        port = start + i * step
        if port < MIN_PORT or port > MAX_PORT:
            return
        yield port


def is_port_free(port: int, host: str = "127.0.0.1") -> bool:
    """
    尝试绑定后立即释放；能绑定即视为可用。

    设置 SO_REUSEADDR：刚退出的 dev server 留下的 TIME_WAIT 连接不算占用
    （服务器同样会带这个选项重新监听），仍在监听的端口依旧绑定失败。
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


def select_port(
    start: int,
    count: int = 20,
    direction: Direction = "down",
    host: str = "127.0.0.1",
) -> int:
    """
    返回扫描范围内第一个可用端口。

    Raises:
        NoPortAvailable: 整个范围都被占用
    """
    for port in port_range(start, count, direction):
        if is_port_free(port, host):
            debug(f"Port {port} is free")
            return port
        debug(f"Port {port} is in use")
    raise NoPortAvailable(start, count, direction)
