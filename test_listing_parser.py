#!/usr/bin/env python3
"""
Tests for marketplace search-page parsing and the text heuristics behind it.
"""

from listing_parser import (
    ListingParser,
    Platform,
    is_placeholder_image,
    parse_moq,
    parse_orders,
    parse_price,
    platform_for_url,
    upgrade_thumbnail,
)

ALIBABA_SEARCH = "https://www.alibaba.com/trade/search?SearchText=phone+case"

CARD_PAGE = """
<html><body>
<div class="organic-list">
  <div class="fy23-search-card">
    <a href="//www.alibaba.com/product-detail/Silicone-Case_1601.html?spm=a2700" title="Silicone Phone Case">
      <img src="data:image/gif;base64,R0lGODlhAQABAAAAACw=" data-src="//s.alicdn.com/@sc04/kf/Hcase.jpg_300x300.jpg">
    </a>
    <div class="search-card-e-price-main">US$0.85 - 1.20</div>
    <div class="search-card-m-sale-features__item">Min. order: 100 pieces</div>
    <a class="search-card-e-company" href="https://acme.en.alibaba.com">Shenzhen Acme Co., Ltd.</a>
    <span>1,234 sold</span>
  </div>
  <div class="fy23-search-card">
    <a href="https://www.alibaba.com/product-detail/Silicone-Case_1601.html?spm=a2700">Duplicate card</a>
  </div>
  <div class="fy23-search-card">
    <a href="/product-detail/Leather-Wallet_1602.html"><img src="data:image/png;base64,iVBORw0KGgo="></a>
    <h2>Leather Wallet</h2>
    <div>US$3.00 MOQ 999999</div>
  </div>
  <div class="fy23-search-card">
    <a href="/product-detail/Tote-Bag_1603.html" title="Canvas Tote Bag">
      <img src="https://s.alicdn.com/@sc04/kf/Htote.jpg_50x50.jpg">
    </a>
  </div>
</div>
</body></html>
"""

ANCHOR_PAGE = """
<html><body>
<div class="results">
  <div class="row">
    <a href="/product-detail/Stainless-Widget_1700.html">Stainless Widget</a>
    <span>US$1.20-2.50</span>
    <span>MOQ 500</span>
  </div>
  <a href="/about-us.html">About us</a>
  <a href="/product-detail/Empty_1701.html"><img src="https://s.alicdn.com/x.jpg"></a>
</div>
</body></html>
"""


def test_parse_price():
    """Test currency-prefixed prices and ranges."""
    print("Testing parse_price...")
    low, high, currency, raw = parse_price("Price: US$0.85 - 1.20 / piece")
    assert (low, high, currency) == (0.85, 1.20, 'USD')
    assert raw == "US$0.85 - 1.20"

    low, high, currency, _ = parse_price("¥12.5~18")
    assert (low, high, currency) == (12.5, 18.0, 'CNY')

    low, high, currency, _ = parse_price("₹1,250 / Piece")
    assert (low, high, currency) == (1250.0, 1250.0, 'INR')

    assert parse_price("Contact supplier") == (None, None, None, None)
    assert parse_price(None) == (None, None, None, None)
    print("✓ parse_price works!")


def test_parse_moq():
    """Test MOQ patterns and the noise bound."""
    print("\nTesting parse_moq...")
    assert parse_moq("MOQ 500") == 500
    assert parse_moq("MOQ 999999") is None
    assert parse_moq("Min. Order: 1,000 Pieces") == 1000
    assert parse_moq("10 Pieces (Min. Order)") == 10
    assert parse_moq("500件起批") == 500
    assert parse_moq("2,000 pcs") == 2000
    assert parse_moq("0 pieces") is None
    assert parse_moq("Ships in 2024") is None
    assert parse_moq("") is None
    print("✓ parse_moq works!")


def test_parse_orders():
    """Test order-count parsing."""
    print("\nTesting parse_orders...")
    assert parse_orders("1,234 sold") == 1234
    assert parse_orders("56 orders") == 56
    assert parse_orders("no sales yet") is None
    print("✓ parse_orders works!")


def test_platform_for_url():
    """Test platform inference from hosts."""
    print("\nTesting platform_for_url...")
    assert platform_for_url("https://detail.1688.com/offer/123.html") == Platform.C1688
    assert platform_for_url("https://www.alibaba.com/product-detail/x.html") == Platform.ALIBABA
    assert platform_for_url("//s.alicdn.com/@sc04/kf/H1.jpg") == Platform.ALIBABA
    assert platform_for_url("https://www.made-in-china.com/prod/x.html") == Platform.MADE_IN_CHINA
    assert platform_for_url("https://dir.indiamart.com/search.mp?ss=x") == Platform.INDIAMART
    assert platform_for_url("https://example.com/") is None
    print("✓ platform_for_url works!")


def test_placeholder_images():
    """Test placeholder and tiny-thumbnail detection."""
    print("\nTesting is_placeholder_image...")
    assert is_placeholder_image("https://www.made-in-china.com/common/img/space.png")
    assert is_placeholder_image("https://img.alicdn.com/imgextra/i4/O1CN01_!!6000000001234-2-tps-64-64.png")
    assert is_placeholder_image("https://s.alicdn.com/@sc04/kf/H1.jpg_50x50.jpg")
    assert is_placeholder_image("https://example.com/static/no-image.png")
    assert is_placeholder_image("https://example.com/img/loading.gif")

    assert not is_placeholder_image("https://example.com/images/blanket.jpg")
    assert not is_placeholder_image("https://s.alicdn.com/@sc04/kf/Hcase.jpg_300x300.jpg")
    assert not is_placeholder_image(None)

    upgraded = upgrade_thumbnail("https://s.alicdn.com/@sc04/kf/H1.jpg_50x50.jpg")
    assert upgraded == "https://s.alicdn.com/@sc04/kf/H1.jpg_350x350.jpg"
    assert not is_placeholder_image(upgraded)
    print("✓ Placeholder detection works!")


def test_card_mode():
    """Test card selectors, dedup, lazy images and field extraction."""
    print("\nTesting card-mode parsing...")
    parser = ListingParser()
    listings = parser.parse(CARD_PAGE, ALIBABA_SEARCH, limit=60, platform=Platform.ALIBABA)

    # Duplicate card coalesced by first occurrence
    assert len(listings) == 3
    urls = [listing.url for listing in listings]
    assert len(set(urls)) == 3

    first = listings[0]
    assert first.url == "https://www.alibaba.com/product-detail/Silicone-Case_1601.html?spm=a2700"
    assert first.title == "Silicone Phone Case"
    assert first.platform == Platform.ALIBABA
    assert first.image == "https://s.alicdn.com/@sc04/kf/Hcase.jpg_300x300.jpg"
    assert (first.price_min, first.price_max, first.currency) == (0.85, 1.20, 'USD')
    assert first.moq == 100
    assert first.store_name == "Shenzhen Acme Co., Ltd."
    assert parse_orders(first.orders_raw) == 1234

    second = listings[1]
    assert second.url == "https://www.alibaba.com/product-detail/Leather-Wallet_1602.html"
    assert second.title == "Leather Wallet"
    assert second.image is None  # only data: URIs
    assert second.moq is None  # 999999 is noise
    assert second.price_min == 3.0

    third = listings[2]
    assert third.image == "https://s.alicdn.com/@sc04/kf/Htote.jpg_350x350.jpg"

    assert len(parser.parse(CARD_PAGE, ALIBABA_SEARCH, limit=1)) == 1
    print("✓ Card-mode parsing works!")


def test_anchor_fallback():
    """Test that a page with no card matches falls back to product anchors."""
    print("\nTesting anchor fallback...")
    parser = ListingParser()
    listings = parser.parse(ANCHOR_PAGE, ALIBABA_SEARCH, limit=60, platform=Platform.ALIBABA)

    assert len(listings) == 1
    listing = listings[0]
    assert listing.url == "https://www.alibaba.com/product-detail/Stainless-Widget_1700.html"
    assert listing.title == "Stainless Widget"
    assert listing.moq == 500
    assert (listing.price_min, listing.price_max) == (1.20, 2.50)
    print("✓ Anchor fallback works!")


def test_unmatched_pages():
    """Test that empty or irrelevant pages yield nothing without raising."""
    print("\nTesting unmatched pages...")
    parser = ListingParser()
    assert parser.parse("", ALIBABA_SEARCH) == []
    assert parser.parse("<html><body><p>Access denied</p></body></html>", ALIBABA_SEARCH) == []
    assert parser.parse(CARD_PAGE, ALIBABA_SEARCH, limit=0) == []
    print("✓ Unmatched pages handled!")


def test_extra_card_selectors():
    """Test that configured selectors are tried before the built-in ones."""
    print("\nTesting extra card selectors...")
    html = """
    <ul>
      <li class="custom-tile"><a href="https://www.made-in-china.com/prod/Chair.html">Office Chair</a>
          <span>US$25.00</span><span>50 Pieces (Min. Order)</span></li>
    </ul>
    """
    parser = ListingParser(extra_card_selectors={Platform.MADE_IN_CHINA: ['.custom-tile']})
    listings = parser.parse(html, "https://www.made-in-china.com/multi-search/chair/F1/1.html")
    assert len(listings) == 1
    assert listings[0].platform == Platform.MADE_IN_CHINA
    assert listings[0].moq == 50
    print("✓ Extra card selectors work!")


def main():
    """Run all tests."""
    print("=" * 60)
    print("Listing Parser Tests")
    print("=" * 60)

    try:
        test_parse_price()
        test_parse_moq()
        test_parse_orders()
        test_platform_for_url()
        test_placeholder_images()
        test_card_mode()
        test_anchor_fallback()
        test_unmatched_pages()
        test_extra_card_selectors()

        print("\n" + "=" * 60)
        print("ALL TESTS PASSED! ✓")
        print("=" * 60)

    except AssertionError as e:
        print(f"\n✗ Test failed: {e}")
        return 1

    return 0


if __name__ == "__main__":
    exit(main())
