"""流式响应解码。

状态机：AWAITING_FRAME -> HAVE_LINE -> HAVE_EVENT -> (EMIT_DELTA | EMIT_DONE | ERROR)

- FrameDecoder 跨 chunk 缓存半行（含被截断的 UTF-8 多字节字符），按行切分，
  组装 SSE 事件（event:/data: 字段，空行分发）或 NDJSON 行。
- decode_stream 对每个帧做 JSON 解码，交给当前 Adapter 的 parse_stream_frame
  映射为 StreamDelta；遇到终止帧（data: [DONE] 或 Adapter 标记的最终帧）后停止。

传输读取失败、非法 UTF-8、JSON 解码失败、帧结构不符、后端在流中返回错误事件，统一抛出 stream_error（不可重试）。
输入正常结束但没有终止帧时，补发一个 is_final 的增量。
"""

import codecs
import json
from dataclasses import dataclass
from typing import Any, AsyncIterable, AsyncIterator, Dict, List, Literal, Optional, Union

import httpx

from chat_bridge.bridge.classifier import stream_error
from chat_bridge.domain.models import ChatResponse, ChatUsage, FinishReason, StreamDelta, ToolCall
from chat_bridge.providers.base import MALFORMED_ERRORS, BackendAdapter, parse_arguments


StreamFormat = Literal["sse", "ndjson"]

AWAITING_FRAME = "AWAITING_FRAME"
HAVE_LINE = "HAVE_LINE"
HAVE_EVENT = "HAVE_EVENT"
EMIT_DELTA = "EMIT_DELTA"
EMIT_DONE = "EMIT_DONE"
ERROR = "ERROR"

DONE_SENTINEL = "[DONE]"


@dataclass(frozen=True)
class Frame:
    """一个完整的流式帧：SSE 事件或一行 NDJSON。"""

    data: str
    event: Optional[str] = None

    @property
    def is_sentinel(self) -> bool:
        return self.data.strip() == DONE_SENTINEL


class FrameDecoder:
    """把任意切分的字节/文本块还原成完整帧。"""

    def __init__(self, fmt: StreamFormat = "sse"):
        self.format = fmt
        self.state = AWAITING_FRAME
        self._utf8 = codecs.getincrementaldecoder("utf-8")()
        self._buffer = ""
        self._event: Optional[str] = None
        self._data: List[str] = []

    def feed(self, chunk: Union[bytes, str]) -> List[Frame]:
        text = self._utf8.decode(chunk) if isinstance(chunk, (bytes, bytearray)) else chunk
        self._buffer += text
        frames: List[Frame] = []
        while True:
            idx = self._buffer.find("\n")
            if idx < 0:
                break
            line = self._buffer[:idx].rstrip("\r")
            self._buffer = self._buffer[idx + 1:]
            self.state = HAVE_LINE
            frame = self._on_line(line)
            if frame is not None:
                frames.append(frame)
        return frames

    def finish(self) -> List[Frame]:
        """输入结束：处理残留半行并分发尚未结束的 SSE 事件。"""

        self._buffer += self._utf8.decode(b"", final=True)
        frames: List[Frame] = []
        if self._buffer:
            line, self._buffer = self._buffer.rstrip("\r"), ""
            frame = self._on_line(line)
            if frame is not None:
                frames.append(frame)
        frame = self._dispatch()
        if frame is not None:
            frames.append(frame)
        return frames

    def _on_line(self, line: str) -> Optional[Frame]:
        if self.format == "ndjson":
            self.state = AWAITING_FRAME
            return Frame(data=line) if line.strip() else None

        if not line:
            return self._dispatch()
        if line.startswith(":"):
            # SSE 注释 / keep-alive
            return None
        field, sep, value = line.partition(":")
        if not sep:
            # 部分兼容服务端直接按行输出 JSON
            field, value = "data", line
        elif value.startswith(" "):
            value = value[1:]
        if field == "data":
            self._data.append(value)
            self.state = HAVE_EVENT
        elif field == "event":
            self._event = value.strip() or None
            self.state = HAVE_EVENT
        return None

    def _dispatch(self) -> Optional[Frame]:
        event, data = self._event, self._data
        self._event, self._data = None, []
        self.state = AWAITING_FRAME
        if not data:
            return None
        return Frame(data="\n".join(data), event=event)


async def decode_stream(
    chunks: AsyncIterable[Union[bytes, str]],
    adapter: BackendAdapter,
    backend_id: str,
) -> AsyncIterator[StreamDelta]:
    """把传输层的 chunk 序列解码为 StreamDelta 序列，最后一个增量 is_final=True。"""

    decoder = FrameDecoder(adapter.stream_format)
    try:
        async for chunk in chunks:
            for frame in decoder.feed(chunk):
                delta = _decode_frame(frame, adapter, backend_id, decoder)
                if delta is None:
                    continue
                yield delta
                if delta.is_final:
                    return
        for frame in decoder.finish():
            delta = _decode_frame(frame, adapter, backend_id, decoder)
            if delta is None:
                continue
            yield delta
            if delta.is_final:
                return
    except (httpx.HTTPError, httpx.StreamError, OSError) as exc:
        decoder.state = ERROR
        raise stream_error(backend_id, adapter.name, f"read failed: {exc}") from exc
    except UnicodeDecodeError as exc:
        decoder.state = ERROR
        raise stream_error(backend_id, adapter.name, f"invalid UTF-8 in stream: {exc}") from exc
    decoder.state = EMIT_DONE
    yield StreamDelta(is_final=True)


def _decode_frame(
    frame: Frame,
    adapter: BackendAdapter,
    backend_id: str,
    decoder: FrameDecoder,
) -> Optional[StreamDelta]:
    if frame.is_sentinel:
        decoder.state = EMIT_DONE
        return StreamDelta(is_final=True)
    try:
        payload = json.loads(frame.data)
        delta = adapter.parse_stream_frame(frame.event, payload)
    except MALFORMED_ERRORS as exc:
        decoder.state = ERROR
        raise stream_error(backend_id, adapter.name, str(exc)) from exc
    if delta is not None:
        decoder.state = EMIT_DONE if delta.is_final else EMIT_DELTA
    return delta


class StreamAccumulator:
    """把增量序列拼装为完整的 ChatResponse（供 stream_send 返回）。"""

    def __init__(self, model: Optional[str] = None, backend_id: Optional[str] = None):
        self.model = model
        self.backend_id = backend_id
        self._text: List[str] = []
        self._calls: Dict[int, Dict[str, Any]] = {}
        self._finish: Optional[FinishReason] = None
        self._usage = ChatUsage()

    def add(self, delta: StreamDelta) -> None:
        if delta.text_fragment:
            self._text.append(delta.text_fragment)
        frag = delta.tool_call_fragment
        if frag is not None:
            slot = self._calls.setdefault(frag.index, {"id": None, "name": None, "arguments": []})
            slot["id"] = slot["id"] or frag.id
            slot["name"] = slot["name"] or frag.name
            if frag.arguments_fragment:
                slot["arguments"].append(frag.arguments_fragment)
        if delta.finish_reason:
            self._finish = delta.finish_reason
        if delta.usage is not None:
            # Anthropic 分别在 message_start / message_delta 中给出输入与输出 token 数
            prompt = max(self._usage.prompt_tokens, delta.usage.prompt_tokens)
            completion = max(self._usage.completion_tokens, delta.usage.completion_tokens)
            self._usage = ChatUsage(
                prompt_tokens=prompt,
                completion_tokens=completion,
                total_tokens=max(delta.usage.total_tokens, prompt + completion),
            )

    def result(self) -> ChatResponse:
        tool_calls = [
            ToolCall(
                id=slot["id"] or f"tool_call_{index}",
                name=slot["name"] or "",
                arguments=parse_arguments("".join(slot["arguments"])),
            )
            for index, slot in sorted(self._calls.items())
        ]
        finish = self._finish or ("tool_calls" if tool_calls else "stop")
        return ChatResponse(
            content="".join(self._text),
            finish_reason=finish,
            usage=self._usage,
            tool_calls=tool_calls or None,
            model=self.model,
            backend_id=self.backend_id,
        )
