from wrap_concierge.entity_extractor import Vehicle


class TestVehicleDetection:
    def test_year_make_model_triple(self, extractor):
        extraction = extractor.extract("2022 Ford F-150 how much to wrap")

        assert extraction.vehicle == Vehicle(year="2022", make="Ford", model="F-150")
        assert extraction.has("pricing")

    def test_punctuation_around_vehicle(self, extractor):
        extraction = extractor.extract("Quote for my 2021 Chevy Silverado, please!")

        assert extraction.vehicle.year == "2021"
        assert extraction.vehicle.make == "Chevy"
        assert extraction.vehicle.model == "Silverado"

    def test_parenthesized_vehicle(self, extractor):
        extraction = extractor.extract("(2019 Toyota Camry)")

        assert extraction.vehicle.label() == "2019 Toyota Camry"

    def test_partial_detection_keeps_what_matched(self, extractor):
        extraction = extractor.extract("2019 Yugo GV how much")

        assert extraction.vehicle.year == "2019"
        assert extraction.vehicle.make is None
        assert extraction.vehicle.model is None
        assert not extraction.vehicle.is_empty()

    def test_model_only(self, extractor):
        extraction = extractor.extract("what about a sprinter?")

        assert extraction.vehicle == Vehicle(model="sprinter")

    def test_nothing_detected(self, extractor):
        extraction = extractor.extract("hi there")

        assert extraction.vehicle.is_empty()
        assert extraction.email is None
        assert extraction.order_number is None
        assert extraction.active_intents() == []

    def test_empty_text(self, extractor):
        extraction = extractor.extract("")

        assert extraction.vehicle.is_empty()
        assert extraction.active_intents() == []

    def test_model_after_make_beats_an_earlier_common_word(self, extractor):
        extraction = extractor.extract("Do you ship express? 2022 Ford F-150 how much")

        assert extraction.vehicle == Vehicle(year="2022", make="Ford", model="F-150")

    def test_common_word_model_still_found_after_make(self, extractor):
        extraction = extractor.extract("Quote for a Ford Escape please")

        assert extraction.vehicle == Vehicle(make="Ford", model="Escape")


class TestContactAndOrderDetection:
    def test_email_is_lowercased(self, extractor):
        extraction = extractor.extract("reach me at Jane.Doe@Example.com thanks")

        assert extraction.email == "jane.doe@example.com"

    def test_hash_order_number(self, extractor):
        extraction = extractor.extract("Where is my order #12345?")

        assert extraction.order_number == "12345"
        assert extraction.has("order_status")

    def test_prefixed_order_number(self, extractor):
        extraction = extractor.extract("status of order WPW-4821 please")

        assert extraction.order_number == "WPW-4821"

    def test_plain_digits_order_number(self, extractor):
        assert extractor.extract("order number 987654").order_number == "987654"

    def test_year_is_not_an_order_number(self, extractor):
        assert extractor.extract("2022 Ford F-150").order_number is None

    def test_vehicle_count(self, extractor):
        extraction = extractor.extract("We run a fleet of 12 vans")

        assert extraction.vehicle_count == 12
        assert extraction.has("bulk_fleet")


class TestIntents:
    def test_intents_fire_independently(self, extractor):
        extraction = extractor.extract("Fleet pricing for our Transit vans? We also need a design.")

        assert extraction.has("pricing")
        assert extraction.has("bulk_fleet")
        assert extraction.has("design_file")
        assert not extraction.has("complaint")

    def test_word_boundaries(self, extractor):
        extraction = extractor.extract("I'm a designer looking at costumes")

        assert not extraction.has("design_file")
        assert not extraction.has("pricing")

    def test_complaint_and_handoff(self, extractor):
        extraction = extractor.extract("My wrap arrived damaged, I want to speak to someone")

        assert extraction.active_intents() == ["complaint", "human_handoff"]

    def test_ordering_a_wrap_is_not_an_order_status_question(self, extractor):
        assert not extractor.extract("I want to order a wrap").has("order_status")

    def test_specialty_film_with_accents(self, extractor):
        assert extractor.extract("Do you have CHRÔME film?").has("specialty_film")
