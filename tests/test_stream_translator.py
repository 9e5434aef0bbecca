import asyncio
import json
import unittest

from grokbridge.errors import RateLimited, UpstreamProtocolError
from grokbridge.streaming import (
    SSE_DONE,
    THINK_CLOSE,
    THINK_OPEN,
    LineBuffer,
    StreamTranslator,
    format_search_results,
)


def _frame(**response) -> str:
    return json.dumps({"result": {"response": response}})


async def _chunks(*parts):
    for part in parts:
        yield part.encode("utf-8") if isinstance(part, str) else part


def _body(*frames: str):
    return _chunks("".join(f"{frame}\n" for frame in frames))


def _sse_contents(events: list) -> list:
    contents = []
    for event in events:
        if not event.startswith("data: ") or event == SSE_DONE:
            continue
        contents.append(json.loads(event[len("data: "):])["choices"][0]["delta"]["content"])
    return contents


class TestLineBuffer(unittest.TestCase):
    def test_partial_trailing_line_is_retained(self):
        buffer = LineBuffer()
        lines = buffer.feed(b'{"a":1}\n{"b":2}\n{"c"')
        self.assertEqual(lines, ['{"a":1}', '{"b":2}'])
        self.assertEqual(buffer.pending, '{"c"')

        self.assertEqual(buffer.feed(b':3}\n'), ['{"c":3}'])
        self.assertEqual(buffer.pending, "")

    def test_multibyte_character_split_across_chunks(self):
        buffer = LineBuffer()
        encoded = '{"token":"héllo"}\n'.encode("utf-8")
        split_at = encoded.index("é".encode("utf-8")) + 1
        self.assertEqual(buffer.feed(encoded[:split_at]), [])
        self.assertEqual(buffer.feed(encoded[split_at:]), ['{"token":"héllo"}'])

    def test_flush_returns_unterminated_remainder(self):
        buffer = LineBuffer()
        buffer.feed(b'{"x":1}')
        self.assertEqual(buffer.flush(), ['{"x":1}'])
        self.assertEqual(buffer.flush(), [])


class TestFrameProcessing(unittest.TestCase):
    def test_chunk_yields_two_frames_and_keeps_partial(self):
        translator = StreamTranslator("grok-3")
        lines = translator.buffer.feed(b'{"a":1}\n{"b":2}\n{"c"')
        processed = [translator.process_line(line) for line in lines]
        self.assertEqual(processed, [(None, None), (None, None)])
        self.assertEqual(translator.buffer.pending, '{"c"')

    def test_rate_limit_error_frame(self):
        translator = StreamTranslator("grok-3")
        with self.assertRaises(RateLimited):
            translator.process_line(json.dumps({"error": {"name": "RateLimitError", "message": "slow down"}}))

    def test_other_error_frame(self):
        translator = StreamTranslator("grok-3")
        with self.assertRaises(UpstreamProtocolError):
            translator.process_line(json.dumps({"error": {"name": "Internal", "message": "x"}}))

    def test_malformed_and_empty_frames_are_ignored(self):
        translator = StreamTranslator("grok-3")
        self.assertEqual(translator.process_line("not json"), (None, None))
        self.assertEqual(translator.process_line(json.dumps({"result": {}})), (None, None))
        self.assertEqual(translator.process_line("   "), (None, None))

    def test_image_generation_suppresses_text_and_hosts_once(self):
        translator = StreamTranslator("grok-3")
        self.assertEqual(translator.process_line(_frame(token="Sure")), ("Sure", None))
        self.assertEqual(translator.process_line(_frame(doImgGen=True, token="x")), (None, None))
        self.assertEqual(translator.process_line(_frame(token="text")), (None, None))
        first = translator.process_line(_frame(cachedImageGenerationResponse={"imageUrl": "users/1/img.jpg"}))
        self.assertEqual(first, (None, "users/1/img.jpg"))
        second = translator.process_line(_frame(cachedImageGenerationResponse={"imageUrl": "users/1/img.jpg"}))
        self.assertEqual(second, (None, None))
        self.assertTrue(translator.state.image_handled)


class TestModelDerivation(unittest.TestCase):
    def _tokens(self, model: str, responses: list, **kwargs) -> list:
        translator = StreamTranslator(model, **kwargs)
        return [translator.derive_token(response) for response in responses]

    def test_reasoning_markers_per_thinking_run(self):
        flags = [True, True, False, True, False, False]
        responses = [{"token": f"t{i}", "isThinking": flag} for i, flag in enumerate(flags)]
        tokens = self._tokens("grok-3-reasoning", responses, show_thinking=True)

        self.assertEqual(
            tokens,
            [
                f"{THINK_OPEN}t0",
                "t1",
                f"{THINK_CLOSE}t2",
                f"{THINK_OPEN}t3",
                f"{THINK_CLOSE}t4",
                "t5",
            ],
        )
        joined = "".join(tokens)
        self.assertEqual(joined.count(THINK_OPEN), 2)
        self.assertEqual(joined.count(THINK_CLOSE), 2)

    def test_reasoning_hidden_thinking_emits_no_markers(self):
        responses = [
            {"token": "plan", "isThinking": True},
            {"token": "answer", "isThinking": False},
        ]
        self.assertEqual(self._tokens("grok-3-reasoning", responses), [None, "answer"])

    def test_deepsearch_phasing(self):
        responses = [
            {"token": "r1"},
            {"token": "r2", "messageTag": "header"},
            {"token": "final", "messageTag": "final"},
            {"token": " answer", "messageTag": "final"},
        ]
        self.assertEqual(
            self._tokens("grok-3-deepsearch", responses),
            [f"{THINK_OPEN}r1", "r2", f"{THINK_CLOSE}final", " answer"],
        )

    def test_deepsearch_all_final_has_no_markers(self):
        responses = [{"token": "a", "messageTag": "final"}, {"token": "b", "messageTag": "final"}]
        self.assertEqual(self._tokens("grok-3-deepsearch", responses), ["a", "b"])

    def test_search_results_block(self):
        results = {"results": [{"title": "T", "url": "https://e.x", "preview": "P"}, {}]}
        tokens = self._tokens("grok-3-search", [{"webSearchResults": results, "token": "ignored"}, {"token": "x"}])
        self.assertEqual(tokens[0], f"\r\n{THINK_OPEN}{format_search_results(results)}{THINK_CLOSE}\r\n")
        self.assertEqual(tokens[1], "x")

    def test_search_results_hidden_passes_token_through(self):
        results = {"results": [{"title": "T"}]}
        tokens = self._tokens("grok-2-search", [{"webSearchResults": results, "token": "t"}], show_search_results=False)
        self.assertEqual(tokens, ["t"])

    def test_search_results_formatting(self):
        formatted = format_search_results(
            {"results": [{"title": "T", "url": "https://e.x", "preview": "P"}, {}]}
        )
        self.assertEqual(
            formatted,
            "\r\n<details><summary>Source[0]: T</summary>\r\nP\r\n\n[Link](https://e.x)\r\n</details>"
            "\n\n"
            "\r\n<details><summary>Source[1]: Untitled</summary>\r\nNo preview available\r\n\n[Link](#)\r\n</details>",
        )
        self.assertEqual(format_search_results(None), "")


class TestTranslatorOutput(unittest.IsolatedAsyncioTestCase):
    async def test_collect_concatenates_tokens(self):
        translator = StreamTranslator("grok-3")
        completion = await translator.collect(
            _chunks(_frame(token="Hel") + "\n" + _frame(token="lo"), "\n" + _frame(token="!") + "\n")
        )
        self.assertEqual(completion["object"], "chat.completion")
        self.assertEqual(completion["model"], "grok-3")
        self.assertEqual(completion["choices"][0]["message"], {"role": "assistant", "content": "Hello!"})
        self.assertEqual(completion["choices"][0]["finish_reason"], "stop")

    async def test_stream_events_end_with_done(self):
        translator = StreamTranslator("grok-3")
        events = [event async for event in translator.stream_events(_body(_frame(token="a"), _frame(token="b")))]
        self.assertEqual(events[-1], SSE_DONE)
        self.assertEqual(_sse_contents(events), ["a", "b"])
        self.assertEqual(translator.emitted_tokens, 2)
        chunk = json.loads(events[0][len("data: "):])
        self.assertEqual(chunk["object"], "chat.completion.chunk")

    async def test_concurrent_requests_keep_their_own_reasoning_state(self):
        async def interleaved(prefix: str, delay: float):
            for i, thinking in enumerate((True, False)):
                await asyncio.sleep(delay)
                yield (_frame(token=f"{prefix}{i}", isThinking=thinking) + "\n").encode("utf-8")

        first = StreamTranslator("grok-3-reasoning", show_thinking=True)
        second = StreamTranslator("grok-3-reasoning", show_thinking=True)
        self.assertIsNot(first.state, second.state)

        async def streamed(translator, chunks) -> str:
            events = [e async for e in translator.stream_events(chunks)]
            return "".join(_sse_contents(events))

        collected, streamed_text = await asyncio.gather(
            first.collect(interleaved("a", 0.01)),
            streamed(second, interleaved("b", 0.015)),
        )

        self.assertEqual(collected["choices"][0]["message"]["content"], f"{THINK_OPEN}a0{THINK_CLOSE}a1")
        self.assertEqual(streamed_text, f"{THINK_OPEN}b0{THINK_CLOSE}b1")

    async def test_dangling_reasoning_span_is_closed_at_end(self):
        translator = StreamTranslator("grok-3-reasoning", show_thinking=True)
        events = [e async for e in translator.stream_events(_body(_frame(token="x", isThinking=True)))]
        self.assertEqual(_sse_contents(events), [f"{THINK_OPEN}x", THINK_CLOSE])

    async def test_error_frame_propagates_from_stream(self):
        translator = StreamTranslator("grok-3")
        body = _body(_frame(token="a"), json.dumps({"error": {"name": "RateLimitError"}}))
        events = []
        with self.assertRaises(RateLimited):
            async for event in translator.stream_events(body):
                events.append(event)
        self.assertEqual(_sse_contents(events), ["a"])
        self.assertNotIn(SSE_DONE, events)

    async def test_generated_image_replaces_text_in_completion(self):
        hosted = []

        async def image_host(url: str) -> str:
            hosted.append(url)
            await asyncio.sleep(0)
            return f"![image](https://img.example/{url})"

        translator = StreamTranslator("grok-3-imageGen", image_host=image_host)
        completion = await translator.collect(
            _body(
                _frame(token="Drawing"),
                _frame(imageAttachmentInfo={"id": 1}),
                _frame(cachedImageGenerationResponse={"imageUrl": "a.jpg"}),
            )
        )
        self.assertEqual(hosted, ["a.jpg"])
        self.assertEqual(completion["choices"][0]["message"]["content"], "![image](https://img.example/a.jpg)")

    async def test_generated_image_streamed_before_done(self):
        async def image_host(url: str) -> str:
            await asyncio.sleep(0.01)
            return "![image](https://img.example/x.jpg)"

        translator = StreamTranslator("grok-2-imageGen", image_host=image_host)
        events = [
            e
            async for e in translator.stream_events(
                _body(_frame(doImgGen=True), _frame(cachedImageGenerationResponse={"imageUrl": "x.jpg"}))
            )
        ]
        self.assertEqual(_sse_contents(events), ["![image](https://img.example/x.jpg)"])
        self.assertEqual(events[-1], SSE_DONE)


if __name__ == "__main__":
    unittest.main()
