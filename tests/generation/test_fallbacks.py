from questiongen.schemas.questionnaire import GeneratedDocument
from questiongen.services.generation.fallbacks import load_fallback_document


def test_fallback_document_is_valid_and_marked():
    document = load_fallback_document()

    assert isinstance(document, GeneratedDocument)
    assert document.metadata["fallback"] is True
    assert len(document.sections) >= 1
    assert all(section.questions for section in document.sections)


def test_fallback_document_is_loaded_once():
    assert load_fallback_document() is load_fallback_document()


def test_fallback_question_ids_are_unique():
    document = load_fallback_document()
    ids = [q.id for section in document.sections for q in section.questions]

    assert len(ids) == len(set(ids))
