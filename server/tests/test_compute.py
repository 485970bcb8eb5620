"""
Tests for chart derivation: signs, houses, aspects and rulers.

Uses the deterministic FakeProvider from conftest, so expected values can be
worked out by hand.
"""

import pytest
from datetime import datetime, timezone

from natal_engine.errors import InvalidBirthInput, RulerNotFound, UnknownTimezone
from natal_engine.ephemeris.compute import (
    orb_limits, angular_separation, aspects, body_position, house_placement,
    house_ruler, house_rulers, houses, is_applying, sign_for_longitude, wrap_degree,
)
from natal_engine.models import (
    MAJOR_ASPECTS, AspectType, BodyPosition, CelestialBody, House, HouseSystem,
    ZodiacSign,
)

INSTANT = datetime(1990, 3, 15, 14, 30, tzinfo=timezone.utc)


def _body(body, longitude, speed=0.0, house=1):
    return BodyPosition(body=body, longitude=longitude, sign=sign_for_longitude(longitude),
                        speed=speed, is_retrograde=speed < 0, house=house)


def _equal_houses(first_cusp):
    return [
        House(number=n, cusp=wrap_degree(first_cusp + 30 * (n - 1)),
              sign=sign_for_longitude(first_cusp + 30 * (n - 1)))
        for n in range(1, 13)
    ]


class TestLongitudes:
    def test_wrap_degree(self):
        assert wrap_degree(360.0) == 0.0
        assert wrap_degree(-30.0) == 330.0
        assert wrap_degree(725.5) == 5.5
        assert 0.0 <= wrap_degree(-1e-20) < 360.0

    def test_sign_boundaries(self):
        assert sign_for_longitude(0.0) == ZodiacSign.ARIES
        assert sign_for_longitude(29.999) == ZodiacSign.ARIES
        assert sign_for_longitude(30.0) == ZodiacSign.TAURUS
        assert sign_for_longitude(359.99) == ZodiacSign.PISCES
        assert sign_for_longitude(360.0) == ZodiacSign.ARIES

    def test_angular_separation_wraps(self):
        assert angular_separation(350.0, 10.0) == pytest.approx(20.0)
        assert angular_separation(10.0, 190.0) == pytest.approx(180.0)
        assert angular_separation(0.0, 0.0) == 0.0


class TestBodies:
    def test_body_position_derives_sign(self, fake_provider):
        position = body_position(fake_provider, CelestialBody.MOON, INSTANT)

        assert position.longitude == 132.0
        assert position.sign == ZodiacSign.LEO
        assert position.is_retrograde is False

    def test_negative_speed_is_retrograde(self, fake_provider):
        position = body_position(fake_provider, CelestialBody.MERCURY, INSTANT)
        assert position.is_retrograde is True

    def test_south_node_opposes_true_node(self, fake_provider):
        north = body_position(fake_provider, CelestialBody.TRUE_NODE, INSTANT)
        south = body_position(fake_provider, CelestialBody.SOUTH_NODE, INSTANT)

        assert south.longitude == pytest.approx(280.0)
        assert south.sign == ZodiacSign.CAPRICORN
        assert south.latitude == -north.latitude
        assert south.speed == north.speed
        assert south.is_retrograde == north.is_retrograde

    def test_longitude_normalised(self, fake_provider):
        fake_provider.positions[CelestialBody.SUN] = (365.0, 0.0, 1.0)

        assert body_position(fake_provider, CelestialBody.SUN, INSTANT).longitude == pytest.approx(5.0)


class TestHouses:
    def test_twelve_cusps(self, fake_provider):
        result = houses(fake_provider, INSTANT, 51.5, -0.13, HouseSystem.PLACIDUS)

        assert [h.number for h in result.houses] == list(range(1, 13))
        assert result.houses[0].cusp == 15.0
        assert result.houses[11].cusp == 345.0
        assert result.ascendant == 15.0
        assert result.midheaven == 285.0

    def test_unknown_house_system(self, fake_provider):
        with pytest.raises(ValueError):
            houses(fake_provider, INSTANT, 51.5, -0.13, "topocentric")

    def test_placement_inside_house(self):
        cusps = _equal_houses(15.0)
        assert house_placement(20.0, cusps) == 1
        assert house_placement(132.0, cusps) == 4
        assert house_placement(190.0, cusps) == 6

    def test_placement_on_cusp_belongs_to_that_house(self):
        cusps = _equal_houses(15.0)
        assert house_placement(15.0, cusps) == 1
        assert house_placement(45.0, cusps) == 2

    def test_placement_wraps_past_zero(self):
        """House 12 runs from 345 through 0 to the house 1 cusp at 15."""
        cusps = _equal_houses(15.0)
        assert house_placement(350.0, cusps) == 12
        assert house_placement(5.0, cusps) == 12
        assert house_placement(14.999, cusps) == 12

    def test_every_longitude_has_exactly_one_house(self):
        cusps = _equal_houses(347.0)
        seen = {house_placement(lon / 4.0, cusps) for lon in range(0, 1440)}
        assert seen == set(range(1, 13))

    def test_duplicate_cusps_go_to_later_house(self):
        cusps = _equal_houses(0.0)
        cusps[2] = House(number=3, cusp=30.0, sign=ZodiacSign.TAURUS)
        assert house_placement(40.0, cusps) == 3

    def test_no_houses(self):
        with pytest.raises(ValueError):
            house_placement(10.0, [])


class TestAspects:
    def test_sorted_and_within_orb(self, sample_chart):
        orbs = [a.orb for a in sample_chart.aspects]

        assert orbs == sorted(orbs)
        for aspect in sample_chart.aspects:
            assert 0.0 <= aspect.orb <= aspect.type.max_orb
            assert aspect.type in MAJOR_ASPECTS
            assert aspect.body1 != aspect.body2

    def test_expected_aspects(self, sample_chart):
        found = {(a.body1, a.body2): a for a in sample_chart.aspects}

        trine = found[(CelestialBody.SUN, CelestialBody.MOON)]
        assert trine.type == AspectType.TRINE
        assert trine.orb == pytest.approx(2.0)

        opposition = found[(CelestialBody.SUN, CelestialBody.MARS)]
        assert opposition.type == AspectType.OPPOSITION
        assert opposition.orb == pytest.approx(0.0)

    def test_one_aspect_per_pair(self, sample_chart):
        pairs = [frozenset((a.body1, a.body2)) for a in sample_chart.aspects]
        assert len(pairs) == len(set(pairs))

    def test_override_tightens_orb(self):
        bodies = [_body(CelestialBody.SUN, 10.0), _body(CelestialBody.MOON, 132.0)]

        assert len(aspects(bodies)) == 1
        assert aspects(bodies, orb_overrides={AspectType.TRINE: 1.0}) == []

    def test_override_cannot_widen_orb(self):
        limits = orb_limits(MAJOR_ASPECTS, {AspectType.TRINE: 20.0, AspectType.SQUARE: -1.0})

        assert limits[AspectType.TRINE] == AspectType.TRINE.max_orb
        assert limits[AspectType.SQUARE] == 0.0

    def test_closest_type_wins(self):
        """65 degrees is a sextile (orb 5), not a quintile (orb 7)."""
        bodies = [_body(CelestialBody.SUN, 0.0), _body(CelestialBody.VENUS, 65.0)]
        found = aspects(bodies, aspect_types=list(AspectType))

        assert len(found) == 1
        assert found[0].type == AspectType.SEXTILE

    def test_applying_and_separating(self):
        sun = _body(CelestialBody.SUN, 10.0, speed=1.0)

        # Moon 118 degrees ahead and faster: the trine is closing
        assert is_applying(sun, _body(CelestialBody.MOON, 128.0, speed=13.0), 120.0) is True
        # Moon 122 degrees ahead: the trine has passed
        assert is_applying(sun, _body(CelestialBody.MOON, 132.0, speed=13.0), 120.0) is False

    def test_minor_aspects_only_when_requested(self):
        bodies = [_body(CelestialBody.SUN, 0.0), _body(CelestialBody.MARS, 150.5)]

        assert aspects(bodies) == []
        assert aspects(bodies, aspect_types=list(AspectType))[0].type == AspectType.QUINCUNX


class TestRulers:
    def test_ruler_located_in_chart(self, sample_chart):
        first = sample_chart.house_rulers[0]

        # house 1 cusp is 15 Aries, ruled by Mars at 190 (Libra, house 6)
        assert first.house_number == 1
        assert first.ruling_body == CelestialBody.MARS
        assert first.ruler_sign == ZodiacSign.LIBRA
        assert first.ruler_house == 6
        assert first.ruler_longitude == 190.0

    def test_twelve_rulers_in_house_order(self, sample_chart):
        assert [r.house_number for r in sample_chart.house_rulers] == list(range(1, 13))

    def test_ruler_missing(self):
        house = House(number=1, cusp=15.0, sign=ZodiacSign.ARIES)

        with pytest.raises(RulerNotFound) as exc_info:
            house_ruler(house, [_body(CelestialBody.SUN, 10.0)])

        assert exc_info.value.body == CelestialBody.MARS

    def test_rulers_sorted_by_house(self, fake_provider):
        result = houses(fake_provider, INSTANT, 51.5, -0.13)
        bodies = [body_position(fake_provider, b, INSTANT)
                  for b in (CelestialBody.SUN, CelestialBody.MOON, CelestialBody.MERCURY,
                            CelestialBody.VENUS, CelestialBody.MARS, CelestialBody.JUPITER,
                            CelestialBody.SATURN)]

        rulers = house_rulers(list(reversed(result.houses)), bodies)
        assert [r.house_number for r in rulers] == list(range(1, 13))


class TestChartCalculator:
    def test_complete_chart(self, sample_chart, birth_input):
        assert len(sample_chart.bodies) == 13
        assert len(sample_chart.houses) == 12
        assert len(sample_chart.house_rulers) == 12
        assert sample_chart.ascendant == 15.0
        assert sample_chart.midheaven == 285.0
        assert sample_chart.birth_date == birth_input.birth_date
        assert sample_chart.location_name == "London, UK"

    def test_bodies_placed_in_houses(self, sample_chart):
        assert sample_chart.body(CelestialBody.SUN).house == 12
        assert sample_chart.body(CelestialBody.MOON).house == 4

    def test_provider_gets_utc_instant(self, calculator, fake_provider, other_birth_input):
        calculator.calculate(other_birth_input)

        # 06:05:30 EDT is 10:05:30 UTC
        _, instant = fake_provider.calls[0]
        assert instant == datetime(1985, 7, 4, 10, 5, 30, tzinfo=timezone.utc)

    def test_coordinates_required(self, calculator, birth_input):
        with pytest.raises(InvalidBirthInput):
            calculator.calculate(birth_input.model_copy(update={"coordinates": None}))

    def test_unknown_timezone(self, calculator, birth_input):
        with pytest.raises(UnknownTimezone):
            calculator.calculate(birth_input.model_copy(update={"timezone": "Mars/Base"}))
