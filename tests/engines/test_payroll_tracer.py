"""Tests for the engine tracer decorator."""

from decimal import Decimal

from payroll_engines.tracer import compute_input_fingerprint, traced_engine


class TestFingerprint:

    def test_deterministic(self):
        kwargs = {"taxable_income": Decimal("4150"), "formula": "Monthly"}
        a = compute_input_fingerprint(("taxable_income", "formula"), kwargs)
        b = compute_input_fingerprint(("taxable_income", "formula"), dict(kwargs))
        assert a == b
        assert len(a) == 16

    def test_changes_with_input(self):
        fields = ("taxable_income",)
        a = compute_input_fingerprint(fields, {"taxable_income": Decimal("4150")})
        b = compute_input_fingerprint(fields, {"taxable_income": Decimal("4151")})
        assert a != b

    def test_dict_key_order_irrelevant(self):
        fields = ("context",)
        a = compute_input_fingerprint(fields, {"context": {"workYears": 3, "exceptions": 0}})
        b = compute_input_fingerprint(fields, {"context": {"exceptions": 0, "workYears": 3}})
        assert a == b

    def test_missing_field_recorded_as_null(self):
        assert compute_input_fingerprint(("x",), {}) == compute_input_fingerprint(("x",), {"x": None})


class TestTracedEngine:

    def test_emits_trace_and_returns_result(self, captured_logs):
        @traced_engine("demo", "2.1", fingerprint_fields=("amount",))
        def double(*, amount):
            return amount * 2

        assert double(amount=Decimal("21")) == Decimal("42")

        traces = [r for r in captured_logs() if r["message"] == "PAYROLL_ENGINE_TRACE"]
        assert len(traces) == 1
        trace = traces[0]
        assert trace["engine_name"] == "demo"
        assert trace["engine_version"] == "2.1"
        assert trace["input_fingerprint"] == compute_input_fingerprint(
            ("amount",), {"amount": Decimal("21")},
        )
        assert "duration_ms" in trace

    def test_no_fingerprint_fields(self, captured_logs):
        @traced_engine("plain", "1.0")
        def identity(value):
            return value

        identity(5)
        traces = [r for r in captured_logs() if r["message"] == "PAYROLL_ENGINE_TRACE"]
        assert traces[0]["input_fingerprint"] == ""

    def test_preserves_function_metadata(self):
        @traced_engine("meta", "1.0")
        def documented():
            """Docstring kept."""

        assert documented.__name__ == "documented"
        assert documented.__doc__ == "Docstring kept."
