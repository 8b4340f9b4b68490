import pytest

from blogcore.query_filter import build_title_filter

POSTS = [
    {'_id': '1', 'title': 'foobar'},
    {'_id': '2', 'title': 'bazqux'},
    {'_id': '3', 'title': 'Intro to FOO fighting'},
    {'_id': '4', 'title': 'a.*b (regex-looking) title'},
]


def matching(predicate):
    return [post['_id'] for post in POSTS if predicate(post)]


@pytest.mark.parametrize('term', [None, '', '   '])
def test_no_term_matches_everything(term):
    assert matching(build_title_filter(term)) == ['1', '2', '3', '4']


def test_case_insensitive_substring():
    assert matching(build_title_filter('Foo')) == ['1', '3']


def test_non_matching_title_is_excluded():
    assert '2' not in matching(build_title_filter('Foo'))


def test_term_is_literal_text():
    assert matching(build_title_filter('.*')) == ['4']
    assert matching(build_title_filter('(regex')) == ['4']
    assert matching(build_title_filter('f.o')) == []


def test_post_without_title_never_matches():
    assert not build_title_filter('foo')({'_id': '5'})
