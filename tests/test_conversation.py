from taskpilot.agent.conversation import ConversationBody, HistoryPolicy


def _body(n: int, policy: HistoryPolicy | None = None) -> ConversationBody:
    body = ConversationBody(policy)
    body.append("user", "task")
    for i in range(n):
        body.append("assistant" if i % 2 == 0 else "user", f"m{i}")
    return body


def test_default_policy_sends_everything() -> None:
    body = _body(6)
    assert len(body.request_messages()) == 7


def test_messages_are_copies() -> None:
    body = _body(1)
    body.messages[0]["content"] = "changed"
    assert body.messages[0]["content"] == "task"


def test_max_turns_keeps_first_and_latest() -> None:
    body = _body(6, HistoryPolicy(max_turns=2))
    contents = [m["content"] for m in body.request_messages()]
    assert contents == ["task", "m4", "m5"]


def test_summarize_hook_replaces_dropped_middle() -> None:
    seen = []

    def summarize(dropped):
        seen.extend(m["content"] for m in dropped)
        return "earlier work"

    body = _body(5, HistoryPolicy(max_turns=1, summarize=summarize))
    out = body.request_messages()

    assert seen == ["m0", "m1", "m2", "m3"]
    assert [m["content"] for m in out] == [
        "task",
        "Summary of earlier conversation:\nearlier work",
        "m4",
    ]


def test_short_history_is_untouched_by_limit() -> None:
    body = _body(2, HistoryPolicy(max_turns=5))
    assert len(body.request_messages()) == 3
