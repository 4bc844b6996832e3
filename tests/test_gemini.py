import unittest
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

import gemini


def op(done):
    return SimpleNamespace(done=done, name="operations/upload-1")


class TestAwaitCompletion(unittest.TestCase):
    def test_already_done_returns_immediately(self):
        get_status = MagicMock()
        sleep = MagicMock()
        operation = op(True)

        result = gemini.await_completion(operation, get_status, sleep=sleep)

        self.assertIs(result, operation)
        get_status.assert_not_called()
        sleep.assert_not_called()

    def test_never_done_checks_six_times(self):
        get_status = MagicMock(side_effect=lambda o: op(False))
        sleep = MagicMock()

        result = gemini.await_completion(op(False), get_status, sleep=sleep)

        self.assertFalse(result.done)
        self.assertEqual(get_status.call_count, 6)
        self.assertEqual(sleep.call_count, 6)
        for call in sleep.call_args_list:
            self.assertEqual(call.args, (5,))

    def test_stops_when_done(self):
        states = [op(False), op(False), op(True)]
        get_status = MagicMock(side_effect=states)
        sleep = MagicMock()

        result = gemini.await_completion(op(False), get_status, sleep=sleep)

        self.assertTrue(result.done)
        self.assertEqual(get_status.call_count, 3)
        self.assertEqual(sleep.call_count, 3)

    def test_passes_last_operation_to_refetch(self):
        first = op(False)
        second = op(True)
        get_status = MagicMock(return_value=second)

        gemini.await_completion(first, get_status, sleep=MagicMock())

        get_status.assert_called_once_with(first)

    def test_refetch_errors_propagate(self):
        get_status = MagicMock(side_effect=ConnectionError("provider down"))
        with self.assertRaises(ConnectionError):
            gemini.await_completion(op(False), get_status, sleep=MagicMock())


def test_upload_to_store_polls_operations_get():
    client = MagicMock()
    client.file_search_stores.upload_to_file_search_store.return_value = op(False)
    client.operations.get.return_value = op(True)

    with patch("gemini.time.sleep") as sleep:
        result = gemini.upload_to_store(client, "fileSearchStores/abc", "a.pdf", b"data", "application/pdf")

    assert result.done
    sleep.assert_called_once_with(5)
    kwargs = client.file_search_stores.upload_to_file_search_store.call_args.kwargs
    assert kwargs["file_search_store_name"] == "fileSearchStores/abc"
    assert kwargs["config"] == {"display_name": "a.pdf", "mime_type": "application/pdf"}


def test_build_contents_maps_roles():
    contents = gemini.build_contents(
        [{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hello"}],
        "next question",
    )
    assert [c.role for c in contents] == ["user", "model", "user"]
    assert contents[-1].parts[0].text == "next question"


def test_generate_answer_adds_file_search_only_for_store():
    client = MagicMock()
    contents = gemini.build_contents(None, "q")

    gemini.generate_answer(client, "gemini-2.5-flash", "be nice", contents, store_name="fileSearchStores/abc")
    config = client.models.generate_content.call_args.kwargs["config"]
    assert config.system_instruction == "be nice"
    assert config.tools[0].file_search.file_search_store_names == ["fileSearchStores/abc"]

    gemini.generate_answer(client, "gemini-2.5-flash", "be nice", contents, store_name="  ")
    config = client.models.generate_content.call_args.kwargs["config"]
    assert not config.tools


def test_extract_citations():
    chunk = MagicMock()
    chunk.model_dump.return_value = {"retrieved_context": {"title": "a.pdf"}}
    response = SimpleNamespace(
        candidates=[SimpleNamespace(grounding_metadata=SimpleNamespace(grounding_chunks=[chunk]))]
    )
    assert gemini.extract_citations(response) == [{"retrieved_context": {"title": "a.pdf"}}]
    assert gemini.extract_citations(SimpleNamespace(candidates=None)) == []
    assert gemini.extract_citations(SimpleNamespace(candidates=[SimpleNamespace(grounding_metadata=None)])) == []


def test_names():
    assert gemini.store_name_for("abc") == "fileSearchStores/abc"
    assert gemini.store_name_for("fileSearchStores/abc") == "fileSearchStores/abc"
    assert gemini.document_name_for("fileSearchStores/s", "d1") == "fileSearchStores/s/documents/d1"
    assert gemini.document_name_for("fileSearchStores/s", "fileSearchStores/s/documents/d1") == \
        "fileSearchStores/s/documents/d1"


def test_check_api_connection_handles_errors():
    client = MagicMock()
    client.models.generate_content.side_effect = RuntimeError("bad key")
    assert gemini.check_api_connection(client, "gemini-2.5-flash") is False


def test_genai_client_requires_key():
    with pytest.raises(RuntimeError):
        gemini.genai_client(None)
