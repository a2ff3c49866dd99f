"""
Unit tests for consensus aggregation.
"""

from conftest import FINGERPRINT_A, FINGERPRINT_B, IDENTITY_A, IDENTITY_B, consensus_text

from routeflux.consensus import (
    aggregate_consensus,
    apply_descriptor_bandwidth,
    find_consensus_files,
    hour_from_filename,
    parse_consensus,
)
from routeflux.models import BandwidthEntry, RelayObservation


def write_consensus(directory, name, entries):
    path = directory / name
    path.write_text(consensus_text(entries))
    return path


class TestParseConsensus:
    """Test suite for parse_consensus."""

    def test_parses_relay_entries(self):
        text = consensus_text([
            ("alpha", IDENTITY_A, "192.0.2.1", ["Fast", "Guard", "Running", "Valid"], 500),
            ("beta", IDENTITY_B, "192.0.2.2", ["Exit", "HSDir", "Running"], 70),
        ])
        relays = parse_consensus(text)

        assert [r.fingerprint for r in relays] == [FINGERPRINT_A, FINGERPRINT_B]
        assert relays[0].nickname == "alpha"
        assert relays[0].ip == "192.0.2.1"
        assert relays[0].port == "9001"
        assert relays[0].flags == "MG"
        assert relays[0].bandwidth == 500
        assert relays[1].flags == "MEH"

    def test_short_r_line_ignored(self):
        """Test malformed router lines and their status lines are skipped."""
        text = "r broken AAAA\ns Running Guard\nw Bandwidth=9\n"
        assert parse_consensus(text) == []

    def test_missing_weight_defaults_to_zero(self):
        text = consensus_text([("alpha", IDENTITY_A, "192.0.2.1", ["Running"], 1)])
        text = text.replace("w Bandwidth=1\n", "")
        assert parse_consensus(text)[0].bandwidth == 0


class TestFiles:
    """Test suite for consensus file discovery."""

    def test_find_consensus_files_nested(self, tmp_path):
        nested = tmp_path / "consensuses-2024-03" / "15"
        nested.mkdir(parents=True)
        (nested / "2024-03-15-02-00-00-consensus").write_text("")
        (nested / "2024-03-15-01-00-00-consensus").write_text("")
        (nested / "2024-03-16-00-00-00-consensus").write_text("")

        found = find_consensus_files(str(tmp_path), "2024-03-15")

        assert [p.rsplit("/", 1)[1] for p in found] == [
            "2024-03-15-01-00-00-consensus",
            "2024-03-15-02-00-00-consensus",
        ]

    def test_hour_from_filename(self):
        assert hour_from_filename("2024-03-15-17-00-00-consensus", "2024-03-15") == 17
        assert hour_from_filename("unexpected", "2024-03-15") == 0


class TestAggregateConsensus:
    """Test suite for aggregate_consensus."""

    def test_uptime_bitmap_and_max_bandwidth(self, tmp_path):
        """Test a relay seen at hours 2 and 5 gets bits 2 and 5 and its best weight."""
        write_consensus(tmp_path, "2024-03-15-02-00-00-consensus", [
            ("alpha", IDENTITY_A, "192.0.2.1", ["Running"], 100),
            ("beta", IDENTITY_B, "192.0.2.2", ["Running"], 30),
        ])
        write_consensus(tmp_path, "2024-03-15-05-00-00-consensus", [
            ("alpha", IDENTITY_A, "192.0.2.1", ["Running"], 250),
        ])

        relays = {r.fingerprint: r for r in aggregate_consensus(str(tmp_path), "2024-03-15")}

        assert relays[FINGERPRINT_A].uptime == (1 << 2) | (1 << 5)
        assert relays[FINGERPRINT_A].bandwidth == 250
        assert relays[FINGERPRINT_B].uptime == 1 << 2
        assert relays[FINGERPRINT_B].bandwidth == 30

    def test_no_consensus_for_date(self, tmp_path):
        write_consensus(tmp_path, "2024-03-14-23-00-00-consensus", [
            ("alpha", IDENTITY_A, "192.0.2.1", ["Running"], 100),
        ])
        assert aggregate_consensus(str(tmp_path), "2024-03-15") is None


class TestApplyDescriptorBandwidth:
    """Test suite for apply_descriptor_bandwidth."""

    def test_replaces_known_relays_only(self):
        relays = [
            RelayObservation(fingerprint=FINGERPRINT_A, nickname="alpha", ip="192.0.2.1", port="9001", bandwidth=10),
            RelayObservation(fingerprint=FINGERPRINT_B, nickname="beta", ip="192.0.2.2", port="9001", bandwidth=20),
        ]
        index = {FINGERPRINT_A: [BandwidthEntry("2024-03-01", 4096), BandwidthEntry("2024-03-20", 8192)]}

        matched = apply_descriptor_bandwidth(relays, index, "2024-03-15")

        assert matched == 1
        assert relays[0].bandwidth == 4096
        assert relays[1].bandwidth == 20
