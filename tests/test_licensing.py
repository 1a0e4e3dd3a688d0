"""
Tests for the Licensing Engine

Registration, pricing, license issuance and accounting.
"""

import threading
from datetime import timedelta
import pytest

from content_rail.config import LICENSE_DURATION
from content_rail.core.errors import (
    AlreadyRegistered,
    ContentInactive,
    ContentNotFound,
    InvalidFingerprint,
    InvalidPrice,
    MissingField,
    NotOwner,
)
from content_rail.core.ledger import fingerprint_hex, parse_fingerprint

OWNER = "0xCreatorAAA"
AGENT = "0xagent01"


class TestFingerprints:
    """Test fingerprint parsing at the boundary."""

    def test_hex_and_bytes_are_equivalent(self, fp):
        raw = fp(1)
        assert parse_fingerprint(fingerprint_hex(raw)) == raw
        assert parse_fingerprint(raw.hex()) == raw

    def test_wrong_size_rejected(self):
        with pytest.raises(InvalidFingerprint):
            parse_fingerprint(b"\x01" * 31)
        with pytest.raises(InvalidFingerprint):
            parse_fingerprint("0x1234")

    def test_non_hex_rejected(self):
        with pytest.raises(InvalidFingerprint):
            parse_fingerprint("0x" + "zz" * 32)


class TestRegistration:
    """Test content registration."""

    def test_register_content(self, engine, fp, clock):
        entry = engine.register_content(fp(1), 50_000, "ipfs://a", OWNER)

        assert entry.price == 50_000
        assert entry.owner == OWNER.lower()
        assert entry.active is True
        assert entry.revenue == 0
        assert entry.access_count == 0
        assert entry.created_at == clock.now

    def test_duplicate_rejected(self, engine, fp):
        engine.register_content(fp(1), 50_000, "ipfs://a", OWNER)

        with pytest.raises(AlreadyRegistered):
            engine.register_content(fp(1), 10, "ipfs://b", "0xother")

        assert engine.get_content(fp(1)).price == 50_000

    @pytest.mark.parametrize("price", [0, -1])
    def test_non_positive_price_rejected(self, engine, fp, price):
        with pytest.raises(InvalidPrice):
            engine.register_content(fp(1), price, "ipfs://a", OWNER)

        assert not engine.store.has_content(fp(1))

    def test_missing_uri_rejected(self, engine, fp):
        with pytest.raises(MissingField):
            engine.register_content(fp(1), 100, "", OWNER)

    def test_unknown_content(self, engine, fp):
        with pytest.raises(ContentNotFound):
            engine.get_content(fp(99))


class TestOwnerOperations:
    """Test owner-only price updates and toggles."""

    @pytest.fixture
    def entry(self, engine, fp):
        return engine.register_content(fp(1), 50_000, "ipfs://a", OWNER)

    def test_owner_updates_price(self, engine, entry):
        engine.update_price(entry.fingerprint, 75_000, OWNER)
        assert engine.get_content(entry.fingerprint).price == 75_000

    def test_owner_match_is_case_insensitive(self, engine, entry):
        engine.update_price(entry.fingerprint, 75_000, OWNER.upper())
        assert entry.price == 75_000

    def test_non_owner_cannot_update(self, engine, entry):
        with pytest.raises(NotOwner):
            engine.update_price(entry.fingerprint, 1, "0xintruder")
        assert entry.price == 50_000

    @pytest.mark.parametrize("price", [0, -5])
    def test_bad_price_leaves_price_unchanged(self, engine, entry, price):
        with pytest.raises(InvalidPrice):
            engine.update_price(entry.fingerprint, price, OWNER)
        assert entry.price == 50_000

    def test_toggle_active(self, engine, entry):
        assert engine.toggle_active(entry.fingerprint, OWNER) is False
        assert engine.toggle_active(entry.fingerprint, OWNER) is True

    def test_non_owner_cannot_toggle(self, engine, entry):
        with pytest.raises(NotOwner):
            engine.toggle_active(entry.fingerprint, "0xintruder")
        assert entry.active is True


class TestLicenses:
    """Test license issuance and validity."""

    @pytest.fixture
    def entry(self, engine, fp):
        return engine.register_content(fp(1), 50_000, "ipfs://a", OWNER)

    def test_record_license(self, engine, entry, clock):
        license = engine.record_license(AGENT, entry.fingerprint, 50_000, "0xtx1")

        assert license.expiry == clock.now + LICENSE_DURATION
        assert license.issued_at == clock.now
        assert entry.revenue == 50_000
        assert entry.access_count == 1
        assert engine.has_valid_license(AGENT, entry.fingerprint)

    def test_holder_lookup_is_case_insensitive(self, engine, entry):
        engine.record_license(AGENT.upper(), entry.fingerprint, 50_000, "0xtx1")
        assert engine.has_valid_license(AGENT, entry.fingerprint)

    def test_repurchase_resets_expiry_without_stacking(self, engine, entry, clock):
        engine.record_license(AGENT, entry.fingerprint, 50_000, "0xtx1")
        clock.advance(days=10)
        license = engine.record_license(AGENT, entry.fingerprint, 50_000, "0xtx2")

        assert license.expiry == clock.now + timedelta(days=30)
        assert engine.get_license(AGENT, entry.fingerprint).transfer_ref == "0xtx2"
        assert entry.access_count == 2
        assert entry.revenue == 100_000

    def test_license_expires_at_exact_expiry(self, engine, entry, clock):
        engine.record_license(AGENT, entry.fingerprint, 50_000, "0xtx1")

        clock.advance(days=30, seconds=-1)
        assert engine.has_valid_license(AGENT, entry.fingerprint)

        clock.advance(seconds=1)
        assert not engine.has_valid_license(AGENT, entry.fingerprint)
        assert engine.get_license(AGENT, entry.fingerprint) is None

    def test_inactive_content_cannot_be_licensed(self, engine, entry):
        engine.toggle_active(entry.fingerprint, OWNER)

        with pytest.raises(ContentInactive):
            engine.record_license(AGENT, entry.fingerprint, 50_000, "0xtx1")
        assert entry.access_count == 0

    def test_unknown_content_cannot_be_licensed(self, engine, fp):
        with pytest.raises(ContentNotFound):
            engine.record_license(AGENT, fp(2), 50_000, "0xtx1")

    def test_transfer_reference_required(self, engine, entry):
        with pytest.raises(MissingField):
            engine.record_license(AGENT, entry.fingerprint, 50_000, "")
        assert not engine.has_valid_license(AGENT, entry.fingerprint)

    def test_revenue_uses_current_price(self, engine, entry):
        engine.update_price(entry.fingerprint, 80_000, OWNER)
        engine.record_license(AGENT, entry.fingerprint, 50_000, "0xtx1")
        assert entry.revenue == 80_000

    def test_concurrent_issuance_keeps_every_increment(self, engine, entry):
        def buy(i):
            engine.record_license(f"0xagent{i}", entry.fingerprint, 50_000, f"0xtx{i}")

        threads = [threading.Thread(target=buy, args=(i,)) for i in range(50)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert entry.access_count == 50
        assert entry.revenue == 50 * 50_000


class TestBatchRecording:
    """Test recording several licenses for one transfer."""

    def test_partial_failure_reported_per_item(self, engine, fp):
        engine.register_content(fp(1), 100, "ipfs://a", OWNER)
        engine.register_content(fp(2), 200, "ipfs://b", OWNER)

        results = engine.record_licenses(AGENT, [fp(1), fp(3), fingerprint_hex(fp(2))], "0xbatch")

        assert [r["success"] for r in results] == [True, False, True]
        assert results[1]["code"] == "CONTENT_NOT_FOUND"
        assert results[2]["pricePaid"] == "200"
        assert engine.has_valid_license(AGENT, fp(2))


class TestStatistics:
    """Test creator stats and platform overview."""

    def test_creator_stats(self, engine, fp):
        engine.register_content(fp(1), 100, "ipfs://a", OWNER)
        engine.register_content(fp(2), 300, "ipfs://b", OWNER)
        engine.register_content(fp(3), 999, "ipfs://c", "0xsomeoneelse")
        engine.record_license(AGENT, fp(1), 100, "0xtx1")

        stats = engine.creator_stats(OWNER)

        assert stats["contentCount"] == 2
        assert stats["totalRevenue"] == "100"
        assert stats["totalAccesses"] == 1

    def test_overview_average_uses_integer_division(self, engine, fp):
        engine.register_content(fp(1), 100, "ipfs://a", OWNER)
        engine.register_content(fp(2), 201, "ipfs://b", OWNER)

        overview = engine.overview()

        assert overview["totalContent"] == 2
        assert overview["activeContent"] == 2
        assert overview["avgPrice"] == "150"

    def test_empty_overview(self, engine):
        assert engine.overview()["avgPrice"] == "0"

    def test_shutdown_clears_store(self, engine, fp):
        engine.register_content(fp(1), 100, "ipfs://a", OWNER)
        engine.shutdown()
        assert len(engine.store) == 0
