import json
from types import SimpleNamespace

import httpx
import openai
import pytest
import requests

from historia.clients.completion_client import (
    CompletionClient,
    CompletionError,
    CompletionErrorKind,
    CompletionRequest,
    MinIntervalLimiter,
    parse_stream_delta,
)


def sse(content):
    return ("data: " + json.dumps({"choices": [{"delta": {"content": content}}]})).encode()


class FakeResponse:
    def __init__(self, status_code=200, lines=(), text="", fail_after=None):
        self.status_code = status_code
        self.text = text
        self._lines = list(lines)
        self._fail_after = fail_after
        self.closed = False

    def iter_lines(self):
        for i, line in enumerate(self._lines):
            if self._fail_after is not None and i >= self._fail_after:
                raise requests.exceptions.ChunkedEncodingError("connection reset")
            yield line

    def close(self):
        self.closed = True


class FakeHttp:
    def __init__(self, response=None, error=None):
        self.headers = {}
        self.response = response
        self.error = error
        self.posts = []
        self.gets = []

    def post(self, url, **kwargs):
        self.posts.append((url, kwargs))
        if self.error:
            raise self.error
        return self.response

    def get(self, url, **kwargs):
        self.gets.append((url, kwargs))
        if self.error:
            raise self.error
        return self.response


class FakeCompletions:
    def __init__(self, content="Greetings.", error=None):
        self.content = content
        self.error = error
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error:
            raise self.error
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=self.content))])


def fake_openai(completions):
    return SimpleNamespace(chat=SimpleNamespace(completions=completions))


def make_client(settings, *, http=None, completions=None):
    return CompletionClient(
        settings,
        openai_client=fake_openai(completions or FakeCompletions()),
        http_session=http or FakeHttp(),
        limiter=MinIntervalLimiter(0),
    )


def request():
    return CompletionRequest(messages=[{"role": "user", "content": "hi"}], model="m")


def test_stream_yields_cumulative_text_and_skips_noise(settings):
    resp = FakeResponse(lines=[
        b'data: {"choices":[{"delta":{"role":"assistant"}}]}',
        b"",
        b": keep-alive",
        sse("H"),
        b"data: {not json",
        sse("ello"),
        b'data: {"choices":[]}',
        b"data: [DONE]",
    ])
    http = FakeHttp(resp)
    client = make_client(settings, http=http)

    assert list(client.complete_streaming(request())) == ["H", "Hello"]
    assert resp.closed

    url, kwargs = http.posts[0]
    assert url == "https://llm.example.test/openai/v1/chat/completions"
    assert kwargs["json"]["stream"] is True
    assert kwargs["stream"] is True
    assert kwargs["headers"]["Authorization"] == "Bearer test-key"


def test_stream_is_lazy_until_iterated(settings):
    http = FakeHttp(FakeResponse(lines=[sse("x"), b"data: [DONE]"]))
    client = make_client(settings, http=http)

    gen = client.complete_streaming(request())
    assert http.posts == []
    assert next(gen) == "x"
    assert len(http.posts) == 1


def test_closing_stream_early_closes_response(settings):
    resp = FakeResponse(lines=[sse("a"), sse("b"), b"data: [DONE]"])
    client = make_client(settings, http=FakeHttp(resp))

    gen = client.complete_streaming(request())
    assert next(gen) == "a"
    gen.close()
    assert resp.closed


@pytest.mark.parametrize(
    "status, kind",
    [
        (401, CompletionErrorKind.AUTH),
        (429, CompletionErrorKind.RATE_LIMITED),
        (503, CompletionErrorKind.SERVER),
    ],
)
def test_stream_non_200_is_classified(settings, status, kind):
    resp = FakeResponse(status_code=status, text="nope")
    client = make_client(settings, http=FakeHttp(resp))

    with pytest.raises(CompletionError) as err:
        list(client.complete_streaming(request()))
    assert err.value.kind == kind
    assert err.value.status == status
    assert resp.closed


def test_stream_without_sentinel_is_network_error(settings):
    client = make_client(settings, http=FakeHttp(FakeResponse(lines=[sse("Hal")])))
    gen = client.complete_streaming(request())

    assert next(gen) == "Hal"
    with pytest.raises(CompletionError) as err:
        next(gen)
    assert err.value.kind == CompletionErrorKind.NETWORK


def test_connection_drop_mid_stream_is_network_error(settings):
    resp = FakeResponse(lines=[sse("a"), sse("b"), b"data: [DONE]"], fail_after=1)
    client = make_client(settings, http=FakeHttp(resp))

    with pytest.raises(CompletionError) as err:
        list(client.complete_streaming(request()))
    assert err.value.kind == CompletionErrorKind.NETWORK
    assert resp.closed


def test_connect_failure_is_network_error(settings):
    client = make_client(settings, http=FakeHttp(error=requests.ConnectionError("dns")))
    with pytest.raises(CompletionError) as err:
        list(client.complete_streaming(request()))
    assert err.value.kind == CompletionErrorKind.NETWORK


def test_stream_with_only_garbage_is_malformed(settings):
    resp = FakeResponse(lines=[b"data: garbage", b"data: [1, 2]", b"data: [DONE]"])
    client = make_client(settings, http=FakeHttp(resp))

    with pytest.raises(CompletionError) as err:
        list(client.complete_streaming(request()))
    assert err.value.kind == CompletionErrorKind.MALFORMED_RESPONSE


def test_error_event_in_stream_is_server_error():
    with pytest.raises(CompletionError) as err:
        parse_stream_delta('{"error": {"message": "overloaded"}}')
    assert err.value.kind == CompletionErrorKind.SERVER
    assert parse_stream_delta('{"choices": [{"delta": {}}]}') == ""
    assert parse_stream_delta('"just a string"') is None


def test_complete_returns_message_content(settings):
    completions = FakeCompletions(content="  To be, or not to be.  ")
    client = make_client(settings, completions=completions)

    assert client.complete(request()) == "To be, or not to be."
    call = completions.calls[0]
    assert call["model"] == "m"
    assert call["max_tokens"] == 400
    assert call["temperature"] == 0.7


def test_complete_empty_reply_is_malformed(settings):
    client = make_client(settings, completions=FakeCompletions(content=""))
    with pytest.raises(CompletionError) as err:
        client.complete(request())
    assert err.value.kind == CompletionErrorKind.MALFORMED_RESPONSE


def _status_error(cls, status):
    req = httpx.Request("POST", "https://llm.example.test/openai/v1/chat/completions")
    return cls("failed", response=httpx.Response(status, request=req), body=None)


@pytest.mark.parametrize(
    "error, kind",
    [
        (_status_error(openai.AuthenticationError, 401), CompletionErrorKind.AUTH),
        (_status_error(openai.RateLimitError, 429), CompletionErrorKind.RATE_LIMITED),
        (_status_error(openai.InternalServerError, 500), CompletionErrorKind.SERVER),
        (openai.APITimeoutError(request=httpx.Request("POST", "https://x.test")), CompletionErrorKind.NETWORK),
    ],
)
def test_complete_classifies_sdk_errors(settings, error, kind):
    client = make_client(settings, completions=FakeCompletions(error=error))
    with pytest.raises(CompletionError) as err:
        client.complete(request())
    assert err.value.kind == kind


def test_build_request_bounds_history_and_attaches_image(settings, catalog):
    settings.history_pairs = 1
    settings.vision_model = "vision-m"
    client = make_client(settings)
    socrates = catalog.get("socrates")
    history = [
        {"role": "user", "content": "old q"},
        {"role": "assistant", "content": "old a"},
        {"role": "user", "content": "new q"},
        {"role": "assistant", "content": "new a"},
    ]

    req = client.build_request(socrates, history, "What is this?", image_ref="https://img/a.png",
                               profile=catalog.profile("socrates"))

    assert req.model == "vision-m"
    assert req.messages[0]["role"] == "system"
    assert req.messages[0]["content"].startswith("You are Socrates")
    assert [m["content"] for m in req.messages[1:3]] == ["new q", "new a"]
    assert req.messages[-1]["content"] == [
        {"type": "text", "text": "What is this?"},
        {"type": "image_url", "image_url": {"url": "https://img/a.png"}},
    ]

    text_only = client.build_request(socrates, [], "Hello")
    assert text_only.model == settings.model
    assert text_only.messages[-1] == {"role": "user", "content": "Hello"}
    assert text_only.to_payload(stream=False)["stream"] is False


def test_limiter_spaces_requests():
    now = [10.0]
    sleeps = []

    def sleep(seconds):
        sleeps.append(seconds)
        now[0] += seconds

    limiter = MinIntervalLimiter(0.5, clock=lambda: now[0], sleep=sleep)
    assert limiter.wait() == 0.0
    now[0] += 0.1
    assert limiter.wait() == pytest.approx(0.4)
    now[0] += 2.0
    assert limiter.wait() == 0.0
    assert sleeps == [pytest.approx(0.4)]


def test_ping(settings):
    ok = make_client(settings, http=FakeHttp(FakeResponse(status_code=200)))
    down = make_client(settings, http=FakeHttp(error=requests.ConnectionError("down")))
    denied = make_client(settings, http=FakeHttp(FakeResponse(status_code=401)))

    assert ok.ping() is True
    assert down.ping() is False
    assert denied.ping() is False


def test_base_url_needs_scheme(settings):
    settings.base_url = "api.groq.com/openai/v1"
    with pytest.raises(RuntimeError):
        make_client(settings)


def test_build_request_window_can_be_overridden(settings, catalog):
    settings.history_pairs = 1
    client = make_client(settings)
    history = [
        {"role": "user", "content": "q1"},
        {"role": "assistant", "content": "a1"},
        {"role": "user", "content": "q2"},
        {"role": "assistant", "content": "a2"},
    ]

    req = client.build_request(catalog.get("socrates"), history, "q3", history_pairs=2)

    assert [m["content"] for m in req.messages[1:]] == ["q1", "a1", "q2", "a2", "q3"]
    assert client.build_request(catalog.get("socrates"), history, "q3", history_pairs=0).messages[1:] == [
        {"role": "user", "content": "q3"},
    ]
