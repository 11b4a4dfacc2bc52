"""Dump parsing: field extraction, tolerance of bad rows, format detection."""

import pytest

from factories import dump, dump_row
from mapwatch.errors import ParseError
from mapwatch.models.schemas import IdentityKind
from mapwatch.tools.dump_parser import parse_dump

REAL_LINE = (
    "INSERT INTO `x_world` VALUES (22028,173,146,5,31912,'Natars 173|146',1,'Natars',"
    "0,'',498,NULL,FALSE,NULL,NULL,NULL);"
)


def test_parses_every_well_formed_row():
    rows = [
        dump_row(i, i - 50, 50 - i, 100 + i, uid=i, player=f"p{i}", aid=7, alliance="Red")
        for i in range(1, 41)
    ]
    result = parse_dump(dump(rows))

    assert len(result.settlements) == 40
    assert result.skipped_row_count == 0
    first = result.settlements[0]
    assert (first.world_id, first.x, first.y) == (1, -49, 49)
    assert first.population == 101
    assert first.player == "p1"
    assert first.player_id == 1
    assert first.alliance == "Red"
    assert first.alliance_id == 7
    assert first.name == "Village -49|49"


def test_real_dump_line():
    [village] = parse_dump(REAL_LINE).settlements
    assert village.world_id == 22028
    assert (village.x, village.y) == (173, 146)
    assert village.tribe == 5
    assert village.settlement_id == 31912
    assert village.name == "Natars 173|146"
    assert village.player == "Natars"
    assert village.alliance is None
    assert village.population == 498
    assert village.is_capital is False
    assert village.wonder_name is None


def test_one_corrupt_row_among_a_hundred():
    rows = [dump_row(i, i % 300, -(i % 300), 10 * i) for i in range(1, 101)]
    text = dump(rows[:50]) + "INSERT INTO `x_world` VALUES (9999,'abc',3,1);\n" + dump(rows[50:])

    result = parse_dump(text)

    assert len(result.settlements) == 100
    assert result.skipped_row_count == 1
    skipped = result.skipped[0]
    assert skipped.line == 51
    assert "9999" in skipped.excerpt


def test_quoted_strings_with_escapes_and_delimiters():
    text = (
        "INSERT INTO x_world VALUES (1,1,1,1,1,'O\\'Brien; (the) first',2,'It''s me',"
        "3,'A,B',10,NULL,NULL,NULL);"
    )
    [village] = parse_dump(text).settlements
    assert village.name == "O'Brien; (the) first"
    assert village.player == "It's me"
    assert village.alliance == "A,B"


def test_quoted_integers_and_missing_optional_fields():
    text = "INSERT INTO x_world VALUES ('5','-3','4','2','77','Camp','9','Bob',NULL,NULL,'250');"
    [village] = parse_dump(text).settlements
    assert village.world_id == 5
    assert (village.x, village.y) == (-3, 4)
    assert village.population == 250
    assert village.alliance_id is None
    assert village.alliance is None
    assert village.is_capital is False
    assert village.is_wonder is False


def test_capital_and_wonder_markers():
    row = dump_row(3, 0, 0, 900, capital=True, wonder=True, wonder_name="Great Wonder")
    [village] = parse_dump(dump([row])).settlements
    assert village.is_capital is True
    assert village.is_wonder is True
    assert village.wonder_name == "Great Wonder"


def test_skips_comments_and_unrelated_statements():
    text = "\n".join([
        "-- map dump generated nightly",
        "/* multi-line",
        "   comment; with a semicolon */",
        "SET NAMES utf8mb4;",
        "CREATE TABLE `x_world` (`id` int(9) unsigned NOT NULL default '0', `x` smallint(3));",
        "INSERT INTO `servers` VALUES (1,'other');",
        REAL_LINE,
    ])
    result = parse_dump(text)
    assert len(result.settlements) == 1
    assert result.skipped_row_count == 0
    assert result.statements_seen == 4


def test_multi_row_insert_statement():
    text = "INSERT INTO x_world VALUES ({}),\n({}),\n({});".format(
        dump_row(1, 1, 1, 10), dump_row(2, 2, 2, 20), dump_row(3, 3, 3, 30)
    )
    result = parse_dump(text)
    assert [v.population for v in result.settlements] == [10, 20, 30]


def test_rows_outside_map_radius_or_negative_population_are_skipped():
    rows = [
        dump_row(1, 10, 10, 100),
        dump_row(2, 401, 0, 100),
        dump_row(3, 5, 5, -4),
    ]
    result = parse_dump(dump(rows), map_radius=400)
    assert len(result.settlements) == 1
    reasons = [s.reason for s in result.skipped]
    assert any("radius" in r for r in reasons)
    assert any("negative" in r for r in reasons)


def test_duplicate_identity_is_skipped():
    result = parse_dump(dump([dump_row(1, 1, 1, 10), dump_row(1, 2, 2, 20)]))
    assert len(result.settlements) == 1
    assert "duplicate" in result.skipped[0].reason


def test_identity_prefers_world_id_then_coordinates():
    text = dump([dump_row(42, 3, 4, 10), dump_row(None, -3, -4, 10)])
    with_id, without_id = parse_dump(text).settlements
    assert with_id.identity.kind == IdentityKind.WORLD_ID
    assert with_id.identity.key == (42,)
    assert without_id.identity.kind == IdentityKind.COORDINATES
    assert without_id.identity.key == (-3, -4)


def test_accepts_bytes():
    result = parse_dump(REAL_LINE.encode("utf-8"))
    assert len(result.settlements) == 1


def test_table_name_is_configurable():
    text = dump([dump_row(1, 1, 1, 10)], table="villages")
    assert len(parse_dump(text, table="villages").settlements) == 1
    with pytest.raises(ParseError):
        parse_dump(text)


@pytest.mark.parametrize("text", ["", "   \n", "<html><body>502 Bad Gateway</body></html>"])
def test_unrecognised_input_fails(text):
    with pytest.raises(ParseError):
        parse_dump(text)


def test_zero_valid_rows_fails_with_diagnostics():
    text = "INSERT INTO x_world VALUES (1,2);\nINSERT INTO x_world VALUES (1,'x','y',1,1,'n',1,'p',1,'a',5);"
    with pytest.raises(ParseError) as exc:
        parse_dump(text)
    assert len(exc.value.skipped) == 2


def test_unterminated_row_does_not_abort_the_dump():
    text = REAL_LINE + "\nINSERT INTO x_world VALUES (1,2,3"
    result = parse_dump(text)
    assert len(result.settlements) == 1
    assert result.skipped[0].reason == "unterminated row"


@pytest.mark.parametrize("broken", [
    "INSERT INTO `x_world` VALUES (9999,7,7,1,1,'O'Brien',1,'p',0,'',50,NULL,FALSE,NULL);\n",
    "INSERT INTO `x_world` VALUES (9999,7,7,1,1,'trunc\n",
])
def test_unbalanced_quote_only_loses_its_own_row(broken):
    rows = [dump_row(i, i, -i, 10 * i) for i in range(1, 101)]
    text = dump(rows[:50]) + broken + dump(rows[50:])

    result = parse_dump(text)

    assert len(result.settlements) == 100
    assert result.skipped_row_count == 1
    assert result.skipped[0].line == 51


def test_cut_off_tuple_in_multiline_insert_only_loses_itself():
    text = "INSERT INTO x_world VALUES\n({}),\n(9999,7,7,1,1,'trunc\n({}),\n({});\n".format(
        dump_row(1, 1, 1, 10), dump_row(2, 2, 2, 20), dump_row(3, 3, 3, 30)
    )
    result = parse_dump(text)
    assert [v.population for v in result.settlements] == [10, 20, 30]
    assert result.skipped_row_count == 1
    assert result.skipped[0].line == 3


def test_values_too_large_for_storage_are_skipped():
    rows = [
        dump_row(1, 1, 1, 100),
        dump_row(2, 2, 2, 100, name="x" * 256),
        dump_row(3, 3, 3, 2**31),
        dump_row(4, 4, 4, 100, alliance="A" * 300, aid=5),
        dump_row(5, 5, 5, 100, name="y" * 255),
    ]
    result = parse_dump(dump(rows))

    assert [v.world_id for v in result.settlements] == [1, 5]
    reasons = [s.reason for s in result.skipped]
    assert len(reasons) == 3
    assert reasons[0].startswith("name:")
    assert reasons[1].startswith("population:")
    assert "255" in reasons[2]
