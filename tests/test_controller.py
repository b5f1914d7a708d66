import asyncio
import base64

import pytest

from conversational_engine.controller import DEFAULT_THREAD_TITLE, ConversationController
from conversational_engine.documents.attachments import ATTACHMENT_BLOCK, ATTACHMENT_ERROR, Attachment, AttachmentKind
from conversational_engine.errors import (
    BackendError,
    ExtractionError,
    ForeignKeyError,
    GenerationCancelled,
    MessageNotFoundError,
    StorageError,
)
from conversational_engine.events import GenerationEventType
from conversational_engine.llms.base import Roles

from .conftest import ScriptedBackend, record, reply


async def _conversation(controller: ConversationController, backend: ScriptedBackend, turns: int) -> tuple[int, list[int]]:
    """Thread with 'turns' user/assistant pairs: u1, a1, u2, a2, ..."""
    thread = await controller.create_thread("Conversation")
    for i in range(1, turns + 1):
        backend.queue(*reply(f"a{i}"))
        await controller.send(thread.id, f"u{i}", "llama3")
    ids = [m.id for m in await controller.list_messages(thread.id)]
    return thread.id, ids


async def _contents(controller: ConversationController, thread_id: int) -> list[str]:
    return [m.content for m in await controller.list_messages(thread_id)]


@pytest.mark.asyncio
async def test_create_thread_defaults(controller):
    thread = await controller.create_thread()
    assert thread.title == DEFAULT_THREAD_TITLE
    assert thread.system_prompt is None
    assert [t.id for t in await controller.list_threads()] == [thread.id]


@pytest.mark.asyncio
async def test_send_stores_user_and_assistant_messages(controller, backend):
    thread = await controller.create_thread("Greeting")
    backend.queue(*reply("Hello there friend"))
    seen: list[str] = []

    message_id = await controller.send(thread.id, "Hi", "llama3", on_fragment=seen.append)

    assert seen == ["Hello", "there", "friend"]
    stored = await controller.list_messages(thread.id)
    assert [(m.role, m.content) for m in stored] == [(Roles.USER, "Hi"), (Roles.ASSISTANT, "Hellotherefriend")]
    assert stored[-1].id == message_id
    assert stored[-1].model == "llama3"
    assert stored[-1].metrics is not None and stored[-1].metrics.eval_count == 40


@pytest.mark.asyncio
async def test_reasoning_is_stored_with_the_answer(controller, backend):
    thread = await controller.create_thread("Reasoning")
    backend.queue(record(thinking="a"), record(thinking="b"), record(content="c"), record(done=True))

    message_id = await controller.send(thread.id, "Why?", "qwen3")

    assistant = (await controller.list_messages(thread.id))[-1]
    assert assistant.id == message_id
    assert assistant.content == "<think>\nab\n</think>\nc"
    assert assistant.thinking_process == "ab"
    assert assistant.metrics is None


@pytest.mark.asyncio
async def test_system_prompt_leads_the_context(controller, backend):
    thread = await controller.create_thread("Prompted", system_prompt="Answer in French.")
    await controller.send(thread.id, "Hello", "llama3")

    model, context = backend.requests[-1]
    assert model == "llama3"
    assert [(m.role, m.content) for m in context] == [(Roles.SYSTEM, "Answer in French."), (Roles.USER, "Hello")]


@pytest.mark.asyncio
async def test_context_contains_full_history(controller, backend):
    thread_id, _ = await _conversation(controller, backend, 2)

    _, context = backend.requests[-1]
    assert [m.content for m in context] == ["u1", "a1", "u2"]
    assert [m.role for m in context] == [Roles.USER, Roles.ASSISTANT, Roles.USER]


@pytest.mark.asyncio
async def test_edit_truncates_and_regenerates(controller, backend):
    thread_id, ids = await _conversation(controller, backend, 2)
    backend.queue(*reply("fresh"))

    new_id = await controller.edit(thread_id, ids[0], "u1 revised", "llama3")

    stored = await controller.list_messages(thread_id)
    assert [m.content for m in stored] == ["u1 revised", "fresh"]
    assert stored[0].id == ids[0]
    assert stored[1].id == new_id
    _, context = backend.requests[-1]
    assert [m.content for m in context] == ["u1 revised"]


@pytest.mark.asyncio
async def test_edit_of_unknown_message_changes_nothing(controller, backend):
    thread_id, ids = await _conversation(controller, backend, 1)
    other = await controller.create_thread("Other")

    with pytest.raises(MessageNotFoundError):
        await controller.edit(thread_id, 9999, "x", "llama3")
    with pytest.raises(MessageNotFoundError):
        await controller.edit(other.id, ids[0], "x", "llama3")

    assert await _contents(controller, thread_id) == ["u1", "a1"]


@pytest.mark.asyncio
async def test_regenerate_replaces_trailing_assistant_message(controller, backend):
    thread_id, ids = await _conversation(controller, backend, 2)
    backend.queue(*reply("a2-again"))

    new_id = await controller.regenerate(thread_id, "llama3")

    stored = await controller.list_messages(thread_id)
    assert [m.content for m in stored] == ["u1", "a1", "u2", "a2-again"]
    assert [m.id for m in stored[:3]] == ids[:3]
    assert new_id not in ids
    _, context = backend.requests[-1]
    assert [m.content for m in context] == ["u1", "a1", "u2"]


@pytest.mark.asyncio
async def test_regenerate_after_user_message_only_appends(controller, backend, messages):
    thread = await controller.create_thread("Unanswered")
    await messages.add_message(thread.id, Roles.USER, "anyone?")
    backend.queue(*reply("yes"))

    await controller.regenerate(thread.id, "llama3")

    assert await _contents(controller, thread.id) == ["anyone?", "yes"]


@pytest.mark.asyncio
async def test_generate_answers_existing_history(controller, backend, messages):
    thread = await controller.create_thread("Imported")
    await messages.add_message(thread.id, Roles.USER, "question")
    backend.queue(*reply("answer"))

    await controller.generate(thread.id, "llama3")

    assert await _contents(controller, thread.id) == ["question", "answer"]


@pytest.mark.asyncio
async def test_regenerate_from_drops_message_and_everything_after(controller, backend):
    thread_id, ids = await _conversation(controller, backend, 2)
    backend.queue(*reply("a1-again"))

    await controller.regenerate_from(thread_id, ids[1], "llama3")

    assert await _contents(controller, thread_id) == ["u1", "a1-again"]
    _, context = backend.requests[-1]
    assert [m.content for m in context] == ["u1"]


@pytest.mark.asyncio
async def test_delete_message_truncates(controller, backend):
    thread_id, ids = await _conversation(controller, backend, 2)

    await controller.delete_message(thread_id, ids[2])

    assert await _contents(controller, thread_id) == ["u1", "a1"]


@pytest.mark.asyncio
async def test_send_to_unknown_thread_fails(controller):
    with pytest.raises(ForeignKeyError):
        await controller.send(4242, "hello", "llama3")


@pytest.mark.asyncio
async def test_send_with_reply_to(controller, backend):
    thread_id, ids = await _conversation(controller, backend, 1)

    await controller.send(thread_id, "about that", "llama3", reply_to_id=ids[1])

    user = (await controller.list_messages(thread_id))[2]
    assert user.reply_to_id == ids[1]


@pytest.mark.asyncio
async def test_backend_failure_persists_no_assistant_message(controller, backend):
    thread = await controller.create_thread("Flaky")
    backend.queue(record(content="partial "), record(content="answer"), BackendError("connection reset"))

    with pytest.raises(BackendError) as exc_info:
        await controller.send(thread.id, "Hi", "llama3")

    assert exc_info.value.partial_transcript == "partial answer"
    assert await _contents(controller, thread.id) == ["Hi"]


@pytest.mark.asyncio
async def test_backend_error_record_persists_nothing(controller, backend):
    thread = await controller.create_thread("Crash")
    backend.queue(record(content="so"), b'{"error": "out of memory"}\n')

    with pytest.raises(BackendError):
        await controller.send(thread.id, "Hi", "llama3")

    assert await _contents(controller, thread.id) == ["Hi"]


@pytest.mark.asyncio
async def test_failed_regenerate_keeps_the_truncation(controller, backend):
    thread_id, _ = await _conversation(controller, backend, 1)
    backend.queue(BackendError("backend down"))

    with pytest.raises(BackendError):
        await controller.regenerate(thread_id, "llama3")

    assert await _contents(controller, thread_id) == ["u1"]


@pytest.mark.asyncio
async def test_send_inlines_documents_and_keeps_images(threads, messages, backend):
    def extract(data: bytes) -> str:
        if data == b"broken":
            raise ExtractionError("not a pdf")
        return data.decode().upper()

    controller = ConversationController(threads, messages, backend, extract_text=extract)
    thread = await controller.create_thread("Attachments")
    attachments = [
        Attachment(kind=AttachmentKind.DOCUMENT, data=base64.b64encode(b"quarterly report").decode(), name="report.pdf"),
        Attachment(kind=AttachmentKind.IMAGE, data="data:image/png;base64,aW1hZ2U=", name="chart.png"),
        Attachment(kind=AttachmentKind.DOCUMENT, data=base64.b64encode(b"broken").decode(), name="scan.pdf"),
        Attachment(kind=AttachmentKind.DOCUMENT, data="%%% not base64 %%%", name="garbage.pdf"),
    ]

    await controller.send(thread.id, "Summarize", "llama3", attachments=attachments)

    user = (await controller.list_messages(thread.id))[0]
    assert user.content == (
        "Summarize"
        + ATTACHMENT_BLOCK.format(index=1, name="report.pdf", text="QUARTERLY REPORT")
        + ATTACHMENT_ERROR.format(index=2, name="scan.pdf")
        + ATTACHMENT_ERROR.format(index=3, name="garbage.pdf")
    )
    assert user.images == ["aW1hZ2U="]
    _, context = backend.requests[-1]
    assert context[-1].images == ["aW1hZ2U="]


@pytest.mark.asyncio
async def test_generate_stream_yields_fragments_then_done(controller, backend):
    thread = await controller.create_thread("Events")
    backend.queue(*reply("one two"))

    events = [event async for event in controller.send_stream(thread.id, "Hi", "llama3")]

    assert [e.type for e in events] == [GenerationEventType.FRAGMENT, GenerationEventType.FRAGMENT, GenerationEventType.DONE]
    assert [e.text for e in events[:2]] == ["one", "two"]
    assert all(e.thread_id == thread.id for e in events)
    assert events[-1].message_id == (await controller.list_messages(thread.id))[-1].id


@pytest.mark.asyncio
async def test_cancel_generation_persists_nothing(controller, backend):
    thread = await controller.create_thread("Long answer")
    backend.delay = 0.01
    backend.queue(*reply(" ".join(f"w{i}" for i in range(200))))
    seen: list[str] = []

    task = asyncio.create_task(controller.send(thread.id, "Tell me everything", "llama3", on_fragment=seen.append))
    while not seen:
        await asyncio.sleep(0.005)

    assert controller.cancel_generation(thread.id)
    with pytest.raises(GenerationCancelled):
        await task

    assert len(seen) < 200
    assert await _contents(controller, thread.id) == ["Tell me everything"]
    assert not controller.cancel_generation(thread.id)


@pytest.mark.asyncio
async def test_cancel_without_running_generation(controller):
    thread = await controller.create_thread()
    assert controller.cancel_generation(thread.id) is False


@pytest.mark.asyncio
async def test_delete_thread_aborts_running_generation(controller, backend, messages):
    thread = await controller.create_thread("Doomed")
    backend.delay = 0.01
    backend.queue(*reply(" ".join(f"w{i}" for i in range(200))))
    seen: list[str] = []

    task = asyncio.create_task(controller.send(thread.id, "Hi", "llama3", on_fragment=seen.append))
    while not seen:
        await asyncio.sleep(0.005)
    await controller.delete_thread(thread.id)

    with pytest.raises(BackendError):
        await task
    assert await controller.list_threads() == []
    assert await messages.list_messages(thread.id) == []


@pytest.mark.asyncio
async def test_generations_in_different_threads_stream_concurrently(controller, backend):
    first = await controller.create_thread("first")
    second = await controller.create_thread("second")
    backend.delay = 0.01
    backend.queue(*reply("a b c d e"))
    backend.queue(*reply("v w x y z"))
    order: list[str] = []

    await asyncio.gather(
        controller.send(first.id, "go", "llama3", on_fragment=lambda text: order.append(f"first:{text}")),
        controller.send(second.id, "go", "llama3", on_fragment=lambda text: order.append(f"second:{text}")),
    )

    sources = [entry.split(":")[0] for entry in order]
    assert sources != sorted(sources)
    assert await _contents(controller, first.id) == ["go", "abcde"]
    assert await _contents(controller, second.id) == ["go", "vwxyz"]


@pytest.mark.asyncio
async def test_generations_in_same_thread_are_serialized(controller, backend):
    thread = await controller.create_thread("busy")
    backend.delay = 0.01
    backend.queue(*reply("a b c"))
    backend.queue(*reply("x y z"))
    order: list[str] = []

    await asyncio.gather(
        controller.send(thread.id, "first", "llama3", on_fragment=order.append),
        controller.send(thread.id, "second", "llama3", on_fragment=order.append),
    )

    assert order == ["a", "b", "c", "x", "y", "z"]
    stored = await controller.list_messages(thread.id)
    assert [m.content for m in stored] == ["first", "abc", "second", "xyz"]
    assert [m.role for m in stored] == [Roles.USER, Roles.ASSISTANT, Roles.USER, Roles.ASSISTANT]
    _, context = backend.requests[-1]
    assert [m.content for m in context] == ["first", "abc", "second"]


@pytest.mark.asyncio
async def test_list_models(controller):
    assert await controller.list_models() == ["llama3", "qwen3"]


def test_build_context_skips_empty_system_prompt():
    assert ConversationController.build_context("", []) == []


@pytest.mark.asyncio
async def test_assistant_message_is_stored_in_a_single_write(controller, backend, messages, monkeypatch):
    async def disk_full(*args, **kwargs):
        raise StorageError("disk full")

    monkeypatch.setattr(messages, "update_message_generation", disk_full)
    thread = await controller.create_thread("Atomic")
    backend.queue(record(thinking="why"), *reply("because"))

    await controller.send(thread.id, "Hi", "qwen3")

    assistant = (await controller.list_messages(thread.id))[-1]
    assert assistant.thinking_process == "why"
    assert assistant.metrics is not None and assistant.metrics.eval_count == 40


@pytest.mark.asyncio
async def test_failed_assistant_write_leaves_no_assistant_message(controller, backend, messages, monkeypatch):
    add_message = messages.add_message

    async def reject_assistant(thread_id, role, content, **kwargs):
        if role is Roles.ASSISTANT:
            raise StorageError("disk full")
        return await add_message(thread_id, role, content, **kwargs)

    monkeypatch.setattr(messages, "add_message", reject_assistant)
    thread = await controller.create_thread("Full disk")
    backend.queue(*reply("lost"))

    with pytest.raises(StorageError):
        await controller.send(thread.id, "Hi", "llama3")

    assert [(m.role, m.content) for m in await controller.list_messages(thread.id)] == [(Roles.USER, "Hi")]


@pytest.mark.asyncio
async def test_thread_guards_are_released_after_use(controller, backend):
    first = await controller.create_thread("first")
    second = await controller.create_thread("second")
    backend.delay = 0.01

    await asyncio.gather(
        controller.send(first.id, "one", "llama3"),
        controller.send(first.id, "two", "llama3"),
        controller.send(second.id, "three", "llama3"),
    )
    await controller.delete_message(second.id, 10_000)

    assert controller._thread_guards == {}
    assert not controller._guard_users


@pytest.mark.asyncio
async def test_cancel_does_not_wait_for_a_stalled_backend(controller, backend):
    thread = await controller.create_thread("Loading model")
    backend.delay = 60.0

    task = asyncio.create_task(controller.send(thread.id, "Hi", "llama3"))
    while not controller.cancel_generation(thread.id):
        await asyncio.sleep(0.005)

    with pytest.raises(GenerationCancelled):
        await asyncio.wait_for(task, timeout=5)
    assert await _contents(controller, thread.id) == ["Hi"]
