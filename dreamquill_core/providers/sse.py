"""SSE 分帧状态机。

厂商的流式响应以 Server-Sent Events 形式到达，传输层切分的字节块
与事件边界没有任何关系。SseFramer 维护一个不断增长的缓冲区：

- feed(chunk): 追加字节后反复查找第一个 "\\n\\n"，每找到一次就把
  分隔符之前（含分隔符）的字节作为一个 block 取出，剩余部分留待下次查找。
- 每个 block 只取第一条以 "data:" 开头的行（忽略前导空白），
  其余行（注释、keep-alive、event/id 字段）一律忽略。
- finish(): 传输结束后，若缓冲区还有残留字节，按同样规则对整个残留
  部分再尝试一次（兼容最后一帧省略分隔符的服务端）。

分帧结果与字节块如何切分无关，因为 block 的解码总是在完整字节上进行。
"""

from typing import Iterator, Optional

BLOCK_DELIMITER = b"\n\n"
DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


def extract_data_line(block: bytes) -> Optional[str]:
    """返回 block 中第一条 data 行的内容（已去掉前缀并 strip）。"""

    text = block.decode("utf-8", errors="replace")
    for line in text.splitlines():
        line = line.lstrip()
        if line.startswith(DATA_PREFIX):
            return line[len(DATA_PREFIX):].strip()
    return None


def is_done(data: str) -> bool:
    return data.strip() == DONE_SENTINEL


class SseFramer:
    """增量 SSE 分帧器，产出每个 block 的 data 内容。"""

    def __init__(self) -> None:
        self._buf = bytearray()

    @property
    def pending(self) -> int:
        """缓冲区中尚未消费的字节数。"""

        return len(self._buf)

    def feed(self, chunk: bytes) -> Iterator[str]:
        self._buf.extend(chunk)
        while True:
            pos = self._buf.find(BLOCK_DELIMITER)
            if pos < 0:
                return
            end = pos + len(BLOCK_DELIMITER)
            block = bytes(self._buf[:end])
            del self._buf[:end]
            data = extract_data_line(block)
            if data is not None:
                yield data

    def finish(self) -> Optional[str]:
        if not self._buf:
            return None
        block = bytes(self._buf)
        self._buf.clear()
        return extract_data_line(block)
