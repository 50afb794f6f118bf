from datetime import date

from runlist.aliases import MakeModelAliases
from runlist.auction_formats import format_lane_run, parse_combined_lane_run
import runlist.config
from runlist.config import NormalizerConfig
from runlist.data_models import Accepted, ColumnMapping, Rejected
from runlist.normalizer import normalize, parse_bool, parse_int, parse_severity


MAPPING = ColumnMapping(
    auction_id="auction-1",
    header_signature="sig",
    fields={
        "vin": "VIN",
        "make": "Make",
        "model": "Model",
        "year": "Yr",
        "trim": "Trim",
        "mileage": "Odometer",
        "lane_number": "Lane",
        "run_number": "Run",
        "price_estimate": "MMR",
        "damage_severity": "Severity",
        "accident_count": "Accidents",
        "owner_count": "Owners",
        "structural_damage": "Frame Damage",
        "leather": "Leather",
        "sunroof": "Sunroof",
        "damage_notes": "Announcements",
    },
)

CONFIG = NormalizerConfig(reference_year=2024)


def _row(**overrides):
    row = {
        "VIN": " 4t1bf1fk5gu123456 ",
        "Make": "  toyota ",
        "Model": "camry",
        "Yr": "2019",
        "Trim": "SE",
        "Odometer": "42,000 mi",
        "Lane": "A",
        "Run": "12",
        "MMR": "$14,000.00",
        "Severity": "Minor",
        "Accidents": "1",
        "Owners": "2",
        "Frame Damage": "No",
        "Leather": "Y",
        "Sunroof": "true",
        "Announcements": "scratch  rear bumper",
    }
    row.update(overrides)
    return row


def _accept(row, **kwargs):
    result = normalize(row, MAPPING, runlist_id="rl-1", config=CONFIG, row_number=3, **kwargs)
    assert isinstance(result, Accepted), result
    return result.vehicle


def test_normalize_coerces_all_fields():
    v = _accept(_row())
    assert v.runlist_id == "rl-1"
    assert v.vin == "4T1BF1FK5GU123456"
    assert (v.make, v.model, v.trim) == ("TOYOTA", "CAMRY", "SE")
    assert v.year == 2019
    assert v.mileage == 42000
    assert v.price_estimate == 14000
    assert v.damage_severity == "minor"
    assert (v.accident_count, v.owner_count) == (1, 2)
    assert v.structural_damage is False
    assert v.leather is True and v.sunroof is True
    assert v.damage_notes == "scratch rear bumper"
    assert (v.lane_number, v.run_number) == ("A", "12")
    assert v.row_number == 3
    assert v.raw_data["Make"] == "  toyota "


def test_missing_make_or_model_rejects_row():
    result = normalize(_row(Make="   ", Model=""), MAPPING, runlist_id="rl-1", row_number=7)
    assert isinstance(result, Rejected)
    assert result.reason == "MissingRequiredField"
    assert result.fields == ("make", "model")
    assert result.row_number == 7


def test_unmapped_model_rejects_row():
    mapping = ColumnMapping(auction_id="a", header_signature="s", fields={"make": "Make"})
    result = normalize({"Make": "Honda"}, mapping, runlist_id="rl-1")
    assert isinstance(result, Rejected)
    assert result.fields == ("model",)


def test_unparseable_and_nonsensical_values_become_absent():
    v = _accept(
        _row(Yr="1850", Odometer="-5", MMR="call", Severity="totaled", Accidents="n/a", Owners="", VIN="  ")
    )
    assert v.year is None
    assert v.mileage is None
    assert v.price_estimate is None
    assert v.damage_severity is None
    assert v.accident_count is None
    assert v.owner_count is None
    assert v.vin is None


def test_year_upper_bound_follows_config():
    assert _accept(_row(Yr="2026")).year == 2026
    assert _accept(_row(Yr="2027")).year is None


def test_default_year_bound_tracks_the_calendar(monkeypatch):
    class _Today(date):
        year_now = 2030

        @classmethod
        def today(cls):
            return cls(cls.year_now, 1, 1)

    monkeypatch.setattr(runlist.config, "date", _Today)
    config = NormalizerConfig()
    assert config.max_year == 2032
    _Today.year_now = 2031
    assert config.max_year == 2033


def test_boolean_tokens():
    assert parse_bool("YES") and parse_bool("y") and parse_bool("1") and parse_bool(" True ")
    assert not parse_bool("no")
    assert not parse_bool("")
    assert not parse_bool(None)
    assert not parse_bool("x")


def test_parse_int_tolerates_formatting():
    assert parse_int("$14,000.00") == 14000
    assert parse_int("42,000 mi") == 42000
    assert parse_int(" 7 ") == 7
    assert parse_int("abc") is None
    assert parse_int(None) is None
    assert parse_int("1.2.3") is None


def test_parse_severity_case_insensitive():
    assert parse_severity("SEVERE") == "severe"
    assert parse_severity("None") == "none"
    assert parse_severity("bad") is None


def test_combined_lane_run_cell():
    mapping = ColumnMapping(
        auction_id="autonation", header_signature="s",
        fields={"make": "Make", "model": "Model", "lane_run": "Lane-Run"},
    )
    result = normalize({"Make": "Ford", "Model": "F-150", "Lane-Run": "bb-0123"}, mapping, runlist_id="rl")
    assert isinstance(result, Accepted)
    assert (result.vehicle.lane_number, result.vehicle.run_number) == ("BB", "123")


def test_explicit_lane_and_run_win_over_combined_cell():
    mapping = ColumnMapping(
        auction_id="autonation", header_signature="s",
        fields={"make": "Make", "model": "Model", "lane_run": "LR", "lane_number": "Lane"},
    )
    result = normalize({"Make": "Ford", "Model": "Edge", "LR": "BB-0007", "Lane": "C"}, mapping, runlist_id="rl")
    assert (result.vehicle.lane_number, result.vehicle.run_number) == ("C", "7")


def test_parse_and_format_lane_run():
    assert parse_combined_lane_run("AA-0001") == ("AA", "1")
    assert parse_combined_lane_run("12-AA") == (None, None)
    assert parse_combined_lane_run(None) == (None, None)
    assert format_lane_run("BB", "123", combined=True) == "BB-0123"
    assert format_lane_run("A", "12") == "Lane A / Run 12"
    assert format_lane_run(None, None) == "N/A"


def test_aliases_applied_after_uppercasing():
    aliases = MakeModelAliases.from_rows(
        [
            {"alias": "chevy", "canonical_make": "Chevrolet", "auction_id": None},
            {"alias": "VW", "canonical_make": "VOLKSWAGEN", "auction_id": None},
            {"alias": "VW", "canonical_make": "VOLKSWAGEN AG", "auction_id": "other"},
        ],
        [{"make": "CHEVROLET", "alias": "silverado 1500", "canonical_model": "SILVERADO", "auction_id": "auction-1"}],
        auction_id="auction-1",
    )
    v = _accept(_row(Make="Chevy", Model="Silverado  1500"), aliases=aliases)
    assert (v.make, v.model) == ("CHEVROLET", "SILVERADO")
    assert aliases.canonical_make("vw") == "VOLKSWAGEN"


def test_auction_specific_alias_wins_over_general():
    aliases = MakeModelAliases.from_rows(
        [
            {"alias": "MB", "canonical_make": "MERCEDES-BENZ", "auction_id": "auction-1"},
            {"alias": "MB", "canonical_make": "MB TRUCKS", "auction_id": None},
        ],
        [],
        auction_id="auction-1",
    )
    assert aliases.canonical_make("mb") == "MERCEDES-BENZ"


def test_vin_info_overrides_make_model_and_year():
    vin_info = {
        "make": "LEXUS",
        "model": "ES",
        "model_year": 2018,
        "body_type": "Sedan/Saloon",
        "decode_source": "nhtsa_batch",
    }
    v = _accept(_row(Make="", Model=""), vin_info=vin_info)
    assert (v.make, v.model, v.year) == ("LEXUS", "ES", 2018)
    assert v.body_type == "Sedan/Saloon"


def test_unavailable_vin_info_is_ignored():
    vin_info = {"make": "", "model": "", "model_year": 0, "decode_source": "unavailable"}
    v = _accept(_row(), vin_info=vin_info)
    assert (v.make, v.model, v.year) == ("TOYOTA", "CAMRY", 2019)
