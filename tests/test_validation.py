"""Tests for argument validation."""
from capabilities import Capability, CreateIdeaArgs
from validation import Validated, ValidationFailure, explain_failure, mentioned_keywords, validate_arguments


class TestValidateArguments:
    def test_unknown_capability(self):
        result = validate_arguments("delete_everything", {})
        assert isinstance(result, ValidationFailure)
        assert result.kind == "unknown_capability"
        assert result.message == "Unknown function: delete_everything"

    def test_valid_arguments_build_typed_object(self):
        result = validate_arguments("GSC_sync_data", {"site_url": "mysite.com"})
        assert isinstance(result, Validated)
        assert result.capability is Capability.GSC_SYNC_DATA
        assert result.args.site_url == "https://mysite.com"
        assert result.args.date_range == "30d"

    def test_none_arguments_treated_as_empty(self):
        result = validate_arguments("CONTENT_suggest_ideas", None)
        assert isinstance(result, Validated)
        assert result.args.max_suggestions == 5

    def test_non_object_arguments(self):
        result = validate_arguments("audit_site", ["https://mysite.com"])
        assert isinstance(result, ValidationFailure)
        assert result.errors[0].field == "arguments"
        assert result.errors[0].kind == "type_mismatch"

    def test_every_missing_field_reported(self):
        result = validate_arguments("create_idea", {})
        assert isinstance(result, ValidationFailure)
        assert set(result.fields) == {"site_url", "title", "hypothesis"}
        assert all(e.kind == "missing_required_field" for e in result.errors)

    def test_constraint_violation_carries_bound(self):
        result = validate_arguments("KEYWORDS_brainstorm", {"generate_count": 500})
        assert isinstance(result, ValidationFailure)
        (error,) = result.errors
        assert error.field == "generate_count"
        assert error.kind == "constraint_violation"
        assert error.constraint == {"type": "max", "value": 50}

    def test_enum_mismatch(self):
        result = validate_arguments("CONTENT_generate_article", {"tone": "sarcastic"})
        assert isinstance(result, ValidationFailure)
        assert result.errors[0].field == "tone"
        assert result.errors[0].kind == "type_mismatch"

    def test_invalid_url_is_format_violation(self):
        result = validate_arguments("audit_site", {"site_url": "no dots here"})
        assert isinstance(result, ValidationFailure)
        error = result.errors[0]
        assert error.kind == "constraint_violation"
        assert error.message == "Must be a valid URL or domain"

    def test_nested_field_path(self):
        result = validate_arguments("KEYWORDS_add_keywords", {"keywords": [{"keyword": ""}]})
        assert isinstance(result, ValidationFailure)
        assert result.fields == ["keywords.0.keyword"]

    def test_unknown_extra_fields_ignored(self):
        result = validate_arguments("get_site_status", {"site_url": "mysite.com", "verbose": True})
        assert isinstance(result, Validated)

    def test_validated_args_do_not_share_input(self):
        evidence = {"clicks": [1, 2]}
        raw = {"site_url": "mysite.com", "title": "Fix titles", "hypothesis": "Titles are too long", "evidence": evidence}
        result = validate_arguments("create_idea", raw)
        assert isinstance(result.args, CreateIdeaArgs)
        evidence["clicks"].append(3)
        assert result.args.evidence == {"clicks": [1, 2]}

    def test_pure_and_repeatable(self):
        raw = {"site_url": "mysite.com", "max_pages": 0}
        first = validate_arguments("SEO_crawl_website", raw)
        second = validate_arguments("SEO_crawl_website", raw)
        assert first == second
        assert raw == {"site_url": "mysite.com", "max_pages": 0}


class TestExplainFailure:
    def test_numbered_when_several_errors(self):
        failure = validate_arguments("create_idea", {})
        text = explain_failure(failure)
        assert text.startswith("I encountered some issues")
        assert "1. " in text and "3. " in text
        assert "I need to know which website to work with" in text

    def test_capability_specific_hint(self):
        failure = validate_arguments("KEYWORDS_add_keywords", {})
        text = explain_failure(failure)
        assert "Suggestion: Please provide the keywords" in text

    def test_unknown_capability(self):
        failure = validate_arguments("nope", {})
        assert "does not exist" in explain_failure(failure)

    def test_suggests_keywords_from_message(self):
        failure = validate_arguments("KEYWORDS_add_keywords", {"site_url": "mysite.com"})
        text = explain_failure(failure, 'Please add "cat toys" and "cat food"')
        assert 'Suggestion: You mentioned "cat toys", "cat food". Should I add them as keywords?' in text

    def test_without_message_keeps_generic_hint(self):
        failure = validate_arguments("KEYWORDS_add_keywords", {"site_url": "mysite.com"})
        assert "You mentioned" not in explain_failure(failure, None)


class TestMentionedKeywords:
    def test_quoted_and_introduced_phrases(self):
        assert mentioned_keywords('track "cat toys" for pet supplies') == ["cat toys", "pet supplies"]

    def test_labelled_topic(self):
        assert mentioned_keywords("cluster: dog food, please") == ["dog food"]

    def test_provided_keywords_win(self):
        args = {"keywords": ["a", {"keyword": "b"}], "topic_focus": "ignored"}
        assert mentioned_keywords('about "c"', args) == ["a", "b"]

    def test_topic_focus_comes_first(self):
        assert mentioned_keywords("ideas about gardening", {"topic_focus": "roses"}) == ["roses", "gardening"]

    def test_nothing_mentioned(self):
        assert mentioned_keywords("") == []
