"""Tests for entity decoding, URL resolution and record normalization."""

import pytest

from harvest.extractor import DetailRecord, ListingRecord
from harvest.models import ProductImage
from harvest.normalizer import (
    apply_detail,
    decode_entities,
    format_price,
    normalize,
    normalize_images,
    parse_price,
    resolve_availability,
    resolve_url,
)
from harvest.url_validation import is_absolute_http_url

BASE = "https://amsterdammodern.com"


class TestDecodeEntities:

    @pytest.mark.parametrize("text", [
        "https://x.com/a?b=1&amp;c=2",
        "&amp;amp;lt;",
        "&lt;p&gt; &quot;hi&quot; &#39;x&#39; &#x27;y&#x27; a&#x2F;b",
        "plain text",
        "",
        "&&amp;;",
    ])
    def test_idempotent(self, text):
        once = decode_entities(text)
        assert decode_entities(once) == once

    def test_decodes_common_entities(self):
        text = "&lt;a&gt; &quot;b&quot; &#39;c&#39; &#x27;d&#x27; e&#x2F;f g&amp;h"

        assert decode_entities(text) == "<a> \"b\" 'c' 'd' e/f g&h"

    def test_double_encoded_fully_decoded(self):
        assert decode_entities("a=1&amp;amp;b=2") == "a=1&b=2"

    def test_clean_string_unchanged(self):
        url = "https://ammod-pro.s3.amazonaws.com/a.jpg?x=1&y=2"

        assert decode_entities(url) == url


class TestResolveUrl:

    @pytest.mark.parametrize("url, expected", [
        ("/rails/a.jpg", f"{BASE}/rails/a.jpg"),
        ("rails/a.jpg", f"{BASE}/rails/a.jpg"),
        ("//cdn.example.com/a.jpg", "https://cdn.example.com/a.jpg"),
        ("https://ammod-pro.s3.amazonaws.com/a.jpg", "https://ammod-pro.s3.amazonaws.com/a.jpg"),
        ("  /padded.jpg\n", f"{BASE}/padded.jpg"),
        ("", ""),
    ])
    def test_resolution(self, url, expected):
        assert resolve_url(url) == expected

    def test_normalized_images_are_absolute(self):
        images = [
            ProductImage("/a.jpg"),
            ProductImage("b.jpg"),
            ProductImage("//cdn.example.com/c.jpg"),
            ProductImage("https://x.com/d.jpg?e=1&amp;f=2"),
            ProductImage("javascript:alert(1)"),
            ProductImage(""),
        ]

        normalized = normalize_images(images, default_alt="Lamp")

        assert len(normalized) == 4
        assert all(is_absolute_http_url(i.url) for i in normalized)
        assert normalized[3].url == "https://x.com/d.jpg?e=1&f=2"
        assert all(i.alt == "Lamp" for i in normalized)

    def test_duplicate_images_dropped_in_order(self):
        images = [ProductImage("/a.jpg", "first"), ProductImage("/b.jpg"), ProductImage("/a.jpg", "second")]

        normalized = normalize_images(images)

        assert [i.url for i in normalized] == [f"{BASE}/a.jpg", f"{BASE}/b.jpg"]
        assert normalized[0].alt == "first"


class TestPrices:

    def test_parse_price_with_thousands(self):
        assert parse_price("Now $1,250.50 only") == (1250.5, "$1,250.50")

    def test_parse_price_missing(self):
        assert parse_price("sold") == (0, None)

    @pytest.mark.parametrize("token, sold, expected", [
        ("$650.00", False, "$650.00"),
        ("$650.00", True, "$650.00"),
        (None, True, "sold"),
        (None, False, ""),
    ])
    def test_format_price(self, token, sold, expected):
        assert format_price(token, sold) == expected

    @pytest.mark.parametrize("count, sold, expected", [
        (9, False, 9),
        (0, False, 0),
        (None, True, 0),
        (None, False, 1),
    ])
    def test_availability(self, count, sold, expected):
        assert resolve_availability(count, sold) == expected


class TestNormalize:

    def _record(self, **kwargs):
        fields = dict(
            id="123",
            slug="desk-lamp",
            name="Desk Lamp",
            url="/categories/1-LIGHTING/123-desk-lamp",
            price=650,
            price_formatted="$650.00",
            thumbnail="/rails/active_storage/thumb.jpg?a=1&amp;b=2",
            category="LIGHTING",
        )
        fields.update(kwargs)
        return ListingRecord(**fields)

    def test_listing_only_product(self):
        product = normalize(self._record())

        assert product.id == "123"
        assert product.url == f"{BASE}/categories/1-LIGHTING/123-desk-lamp"
        assert [i.url for i in product.images] == [f"{BASE}/rails/active_storage/thumb.jpg?a=1&b=2"]
        assert product.images[0].alt == "Desk Lamp"
        assert product.designer == ""

    def test_detail_fields_merged(self):
        detail = DetailRecord(
            designer="Hans Wegner / Denmark",
            description="long text",
            dimensions="H 40 cm",
            images=[ProductImage("https://ammod-pro.s3.amazonaws.com/full.jpg")],
        )

        product = normalize(self._record(), detail)

        assert product.designer == "Hans Wegner / Denmark"
        assert product.dimensions == "H 40 cm"
        assert [i.url for i in product.images] == ["https://ammod-pro.s3.amazonaws.com/full.jpg"]

    def test_detail_without_images_keeps_thumbnail(self):
        product = normalize(self._record())

        apply_detail(product, DetailRecord(designer="A / B"))

        assert len(product.images) == 1
        assert product.designer == "A / B"

    def test_negative_price_clamped(self):
        assert normalize(self._record(price=-5)).price == 0
