import pytest

from doc_evolution.core.errors import ContentSourceError, DocumentNotFoundError
from doc_evolution.sources.local import LocalDirectorySource


@pytest.fixture
def docs_dir(tmp_path):
    (tmp_path / "leave.md").write_text("Intro line\n# Leave policy\nBody\n")
    (tmp_path / "expenses.md").write_text("No heading here\n")
    (tmp_path / "notes.txt").write_text("# Ignored\n")
    return tmp_path


@pytest.mark.asyncio
async def test_list_documents_uses_first_heading(docs_dir):
    documents = await LocalDirectorySource(docs_dir).list_documents()
    assert documents == [("expenses", "expenses"), ("leave", "Leave policy")]


@pytest.mark.asyncio
async def test_missing_directory(tmp_path):
    with pytest.raises(ContentSourceError):
        await LocalDirectorySource(tmp_path / "absent").list_documents()


@pytest.mark.asyncio
async def test_read_and_update(docs_dir):
    source = LocalDirectorySource(docs_dir)
    assert (await source.get_content("leave")).startswith("Intro line")

    await source.update_content("leave", "# Leave policy\nNew body\n")
    assert (docs_dir / "leave.md").read_text() == "# Leave policy\nNew body\n"


@pytest.mark.asyncio
async def test_unknown_document(docs_dir):
    source = LocalDirectorySource(docs_dir)
    with pytest.raises(DocumentNotFoundError):
        await source.get_content("missing")
    with pytest.raises(DocumentNotFoundError):
        await source.update_content("missing", "text")


@pytest.mark.asyncio
async def test_path_outside_root_is_not_a_document(docs_dir):
    with pytest.raises(DocumentNotFoundError):
        await LocalDirectorySource(docs_dir).get_content("../leave")
