"""Tests for the category crawler state machine."""

import pytest

from harvest.config import get_category
from harvest.crawler import (
    CrawlAborted,
    CrawlReport,
    crawl_all,
    crawl_category,
    crawl_listing_pages,
    fetch_with_retry,
    listing_start_url,
)
from harvest.fetcher import HttpStatusError, NetworkError
from harvest.models import Category

BASE = "https://amsterdammodern.com"
PAGE1 = f"{BASE}/categories/1-LIGHTING?order=added_new-old&page=1"
PAGE2 = f"{BASE}/categories/1-LIGHTING?order=added_new-old&page=2"
NEXT2 = "/categories/1-LIGHTING?order=added_new-old&amp;page=2"


def detail_url(product_id, name):
    return f"{BASE}/categories/1-LIGHTING/{product_id}-{name.lower().replace(' ', '-')}"


def no_sleep(_seconds):
    return None


@pytest.fixture
def lighting():
    return get_category("1-LIGHTING")


@pytest.fixture
def two_pages(listing_item, listing_page):
    """Two listing pages sharing product 456."""
    return {
        PAGE1: listing_page(
            [listing_item("123", "Desk Lamp", "$650.00 L585"), listing_item("456", "Floor Lamp", "$90.00")],
            next_href=NEXT2,
            pages=2,
        ),
        PAGE2: listing_page(
            [listing_item("456", "Floor Lamp Again", "$95.00"), listing_item("789", "Wall Lamp", "sold")],
            pages=2,
        ),
    }


class TestListingPagination:

    def test_start_url_has_sort_order(self, lighting):
        assert listing_start_url(lighting) == PAGE1

    def test_follows_next_links_and_dedupes(self, lighting, two_pages, fake_fetcher):
        fetch = fake_fetcher(two_pages)
        report = CrawlReport(slug=lighting.slug)

        records = crawl_listing_pages(lighting, report, fetch=fetch, sleep=no_sleep)

        assert fetch.calls == [PAGE1, PAGE2]
        assert [r.id for r in records] == ["123", "456", "789"]
        assert records[1].name == "Floor Lamp"
        assert records[1].price == 90
        assert report.pages == 2
        assert report.total_pages == 2

    def test_first_page_failure_aborts(self, lighting, fake_fetcher):
        fetch = fake_fetcher({})

        with pytest.raises(CrawlAborted) as exc:
            crawl_listing_pages(lighting, CrawlReport(slug=lighting.slug), fetch=fetch, retries=0, sleep=no_sleep)
        assert exc.value.slug == "1-LIGHTING"

    def test_later_page_failure_stops_pagination(self, lighting, two_pages, fake_fetcher):
        fetch = fake_fetcher({PAGE1: two_pages[PAGE1]})
        report = CrawlReport(slug=lighting.slug)

        records = crawl_listing_pages(lighting, report, fetch=fetch, retries=0, sleep=no_sleep)

        assert [r.id for r in records] == ["123", "456"]
        assert report.page_failures[0][0] == PAGE2

    def test_self_referencing_next_link_terminates(self, lighting, listing_item, listing_page, fake_fetcher):
        html = listing_page(
            [listing_item("1", "Lamp", "$1.00")],
            next_href="/categories/1-LIGHTING?order=added_new-old&amp;page=1",
        )
        fetch = fake_fetcher({PAGE1: html})

        records = crawl_listing_pages(lighting, CrawlReport(slug=lighting.slug), fetch=fetch, sleep=no_sleep)

        assert len(records) == 1
        assert fetch.calls == [PAGE1]


class TestFetchWithRetry:

    def test_retries_transient_failures(self):
        calls = []

        def flaky(url, session=None):
            calls.append(url)
            if len(calls) < 3:
                raise HttpStatusError(url, 503)
            return "ok"

        assert fetch_with_retry(PAGE1, flaky, retries=2, sleep=no_sleep) == "ok"
        assert len(calls) == 3

    def test_gives_up_after_retries(self):
        def down(url, session=None):
            raise NetworkError(url, "down")

        with pytest.raises(NetworkError):
            fetch_with_retry(PAGE1, down, retries=1, sleep=no_sleep)

    def test_permanent_failure_not_retried(self):
        calls = []

        def missing(url, session=None):
            calls.append(url)
            raise HttpStatusError(url, 404)

        with pytest.raises(HttpStatusError):
            fetch_with_retry(PAGE1, missing, retries=3, sleep=no_sleep)
        assert len(calls) == 1


class TestCrawlCategory:

    def test_full_crawl_enriches_and_saves(self, store, two_pages, detail_page, storage_url, fake_fetcher):
        image = storage_url("lamp.jpg")
        pages = dict(two_pages)
        pages[detail_url("123", "Desk Lamp")] = detail_page(images=[image])
        pages[detail_url("456", "Floor Lamp")] = detail_page(designer="Poul Henningsen / Denmark")
        pages[detail_url("789", "Wall Lamp")] = detail_page()
        fetch = fake_fetcher(pages)

        report = crawl_category("1-LIGHTING", store, fetch=fetch, sleep=no_sleep)

        assert report.status == "done"
        assert report.listed == 3
        assert report.enriched == 3
        saved = store.load_category("1-LIGHTING")
        assert [p.id for p in saved] == ["123", "456", "789"]
        assert saved[0].images[0].url == image.replace("/400x300/", "/800x600/")
        assert saved[0].designer == "Pierre Jeanneret / Chandigarh / India"
        assert saved[1].designer == "Poul Henningsen / Denmark"
        assert saved[2].available == 0

    def test_detail_failure_keeps_listing_record(self, store, two_pages, detail_page, fake_fetcher):
        pages = dict(two_pages)
        pages[detail_url("123", "Desk Lamp")] = detail_page()
        pages[detail_url("789", "Wall Lamp")] = detail_page()
        fetch = fake_fetcher(pages, failures=[detail_url("456", "Floor Lamp")])

        report = crawl_category("1-LIGHTING", store, fetch=fetch, sleep=no_sleep)

        assert report.status == "done"
        assert [pid for pid, _ in report.detail_failures] == ["456"]
        floor_lamp = store.load_category("1-LIGHTING")[1]
        assert floor_lamp.name == "Floor Lamp"
        assert floor_lamp.designer == ""
        assert floor_lamp.images[0].url.endswith("/thumbs/456.jpg")

    def test_quick_mode_skips_details(self, store, two_pages, fake_fetcher):
        fetch = fake_fetcher(two_pages)

        report = crawl_category("1-LIGHTING", store, quick=True, fetch=fetch, sleep=no_sleep)

        assert fetch.calls == [PAGE1, PAGE2]
        assert report.saved == 3
        assert report.enriched == 0

    def test_quick_recrawl_keeps_stored_details(self, store, two_pages, fake_fetcher, product_factory):
        stored = product_factory(
            "123",
            images=["https://ammod-pro.s3.amazonaws.com/full-1.jpg", "https://ammod-pro.s3.amazonaws.com/full-2.jpg"],
            designer="Stored Designer / NL",
            description="stored description",
        )
        store.save_category("1-LIGHTING", [stored, product_factory("999")])

        crawl_category("1-LIGHTING", store, quick=True, fetch=fake_fetcher(two_pages), sleep=no_sleep)

        saved = {p.id: p for p in store.load_category("1-LIGHTING")}
        assert saved["123"].price == 650
        assert saved["123"].designer == "Stored Designer / NL"
        assert len(saved["123"].images) == 2
        assert "999" in saved

    def test_aborted_crawl_leaves_file_untouched(self, store, fake_fetcher, product_factory):
        store.save_category("1-LIGHTING", [product_factory("1")])
        before = store.path_for("1-LIGHTING").read_text()

        report = crawl_category("1-LIGHTING", store, fetch=fake_fetcher({}), retries=0, sleep=no_sleep)

        assert report.status == "aborted"
        assert store.path_for("1-LIGHTING").read_text() == before

    def test_unknown_category(self, store, fake_fetcher):
        with pytest.raises(KeyError):
            crawl_category("99-NOPE", store, fetch=fake_fetcher({}))


class TestCrawlAll:

    def test_aggregate_rebuilt_after_all_categories(self, store, two_pages, fake_fetcher, listing_item, listing_page):
        seating_page = f"{BASE}/categories/2-SEATING?order=added_new-old&page=1"
        pages = dict(two_pages)
        pages[seating_page] = listing_page([listing_item("555", "Chair", "$300.00", category="2-SEATING")])
        categories = (get_category("1-LIGHTING"), get_category("2-SEATING"))

        reports = crawl_all(store, quick=True, categories=categories, fetch=fake_fetcher(pages), sleep=no_sleep)

        assert [r.status for r in reports] == ["done", "done"]
        assert [p.id for p in store.load_aggregate()] == ["123", "456", "789", "555"]

    def test_one_aborted_category_does_not_stop_others(self, store, two_pages, fake_fetcher):
        categories = (get_category("2-SEATING"), get_category("1-LIGHTING"))

        reports = crawl_all(
            store, quick=True, categories=categories, fetch=fake_fetcher(two_pages), retries=0, sleep=no_sleep
        )

        assert [r.status for r in reports] == ["aborted", "done"]
        assert len(store.load_aggregate()) == 3

    def test_category_records_are_static(self):
        assert isinstance(get_category("752-just-landed"), Category)
