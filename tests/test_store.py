import sqlite3
import threading

import pytest

from sporza_new import Article, ArticleStore, NotFound, PersistenceError


def test_add_then_get_by_url(store):
    article_id = store.add(Article(title="Morning Briefing", url="/a/1"))

    stored = store.get_by_url("/a/1")
    assert stored.id == article_id
    assert stored.title == "Morning Briefing"
    assert stored.url == "/a/1"
    assert stored.html is None
    assert not stored.extracted


def test_update_html_marks_article_extracted(store):
    article_id = store.add(Article(title="A", url="/a/1"))

    assert store.update_html(article_id, "<p>Body</p>") == 1

    stored = store.get_by_id(article_id)
    assert stored.html == "<p>Body</p>"
    assert stored.extracted


def test_update_html_on_missing_id_creates_nothing(store):
    store.add(Article(title="A", url="/a/1"))

    assert store.update_html(999, "<p>x</p>") == 0
    assert store.count() == 1
    with pytest.raises(NotFound):
        store.get_by_id(999)


def test_count_tracks_adds_and_deletes(store):
    ids = [store.add(Article(title=f"T{i}", url=f"/a/{i}")) for i in range(5)]
    assert store.count() == 5

    assert store.delete_by_id(ids[1]) == 1
    assert store.delete_by_id(ids[3]) == 1
    assert store.delete_by_id(ids[3]) == 0
    assert store.count() == 3


def test_ids_are_not_reused_after_delete(store):
    first = store.add(Article(title="A", url="/a/1"))
    second = store.add(Article(title="B", url="/a/2"))
    store.delete_by_id(second)

    third = store.add(Article(title="C", url="/a/3"))
    assert first < second < third


def test_adding_known_url_updates_instead_of_duplicating(store):
    article_id = store.add(Article(title="Old title", url="/a/1"))
    store.update_html(article_id, "<p>Body</p>")

    again = store.add(Article(title="New title", url="/a/1"))

    assert again == article_id
    assert store.count() == 1
    stored = store.get_by_url("/a/1")
    assert stored.title == "New title"
    assert stored.html == "<p>Body</p>"


def test_lookups_raise_not_found(store):
    with pytest.raises(NotFound):
        store.get_by_url("/nope")
    with pytest.raises(NotFound):
        store.get_by_id(1)


def test_list_articles_in_insertion_order(store):
    for url in ("/c", "/a", "/b"):
        store.add(Article(title=url, url=url))

    assert [a.url for a in store.list_articles()] == ["/c", "/a", "/b"]


def test_clear_removes_everything(store):
    store.add(Article(title="A", url="/a/1"))
    store.add(Article(title="B", url="/a/2"))

    assert store.clear() == 2
    assert store.count() == 0


def test_data_survives_a_new_store_instance(store, settings):
    store.add(Article(title="A", url="/a/1"))

    other = ArticleStore(settings.db_path)
    other.init()
    try:
        assert other.count() == 1
    finally:
        other.close()


def test_unreachable_database_raises_persistence_error(tmp_path):
    # A directory cannot be opened as a database file
    store = ArticleStore(tmp_path)
    with pytest.raises(PersistenceError):
        store.init()


def test_close_releases_connections_from_every_thread(store):
    opened = []

    def worker():
        store.count()
        opened.append(store._get_conn())

    thread = threading.Thread(target=worker)
    thread.start()
    thread.join()

    store.close()

    with pytest.raises(sqlite3.ProgrammingError):
        opened[0].execute("SELECT 1")
    # The store reconnects on next use
    assert store.count() == 0
