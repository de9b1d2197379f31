"""Tests for the just-paid checkout marker."""

from meisterdesk.entitlements.markers import consume_checkout_marker


class TestConsumeCheckoutMarker:
    def test_marker_detected_and_stripped(self):
        present, url = consume_checkout_marker(
            "https://app.test/dashboard?paddle_success=true&plan=monthly&welcome=pro"
        )
        assert present is True
        assert url == "https://app.test/dashboard?plan=monthly&welcome=pro"

    def test_stripped_url_does_not_retrigger(self):
        _, url = consume_checkout_marker("https://app.test/dashboard?paddle_success=1")
        assert consume_checkout_marker(url) == (False, url)
        assert url == "https://app.test/dashboard"

    def test_absent_marker_leaves_url_untouched(self):
        url = "https://app.test/dashboard?tab=billing"
        assert consume_checkout_marker(url) == (False, url)

    def test_falsy_marker_is_stripped_but_not_present(self):
        present, url = consume_checkout_marker("https://app.test/dashboard?paddle_success=false&tab=x")
        assert present is False
        assert url == "https://app.test/dashboard?tab=x"

    def test_custom_parameter_name(self):
        present, url = consume_checkout_marker("https://app.test/?fs_success=yes", param="fs_success")
        assert present is True
        assert url == "https://app.test/"
