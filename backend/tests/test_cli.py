"""
CLI command tests.

Verifies the users and fraud command groups through Flask's CLI runner.
"""

from trustchain.models import Profile


class TestUsersCommands:

    def test_upsert_creates_profile(self, app, db_session):
        runner = app.test_cli_runner()
        result = runner.invoke(args=[
            "users", "upsert",
            "--user-id", "drv-9", "--role", "driver", "--name", "Jane Driver", "--phone", "0712345678",
            "--verified",
        ])

        assert result.exit_code == 0, result.output
        assert "PASS Profile drv-9 (driver) saved" in result.output
        profile = db_session.get(Profile, "drv-9")
        assert profile.verified is True
        assert profile.phone == "0712345678"

    def test_upsert_rejects_blank_name(self, app, db_session):
        result = app.test_cli_runner().invoke(args=[
            "users", "upsert", "--user-id", "x", "--role", "customer", "--name", "   ",
        ])
        assert result.exit_code == 1
        assert "FAIL" in result.output

    def test_list_by_role(self, app, customer, driver):
        result = app.test_cli_runner().invoke(args=["users", "list", "--role", "driver"])
        assert result.exit_code == 0
        assert driver.id in result.output
        assert customer.id not in result.output


class TestFraudCommands:

    def test_check_without_subject_fails(self, app, db_session):
        result = app.test_cli_runner().invoke(args=["fraud", "check"])
        assert result.exit_code == 1
        assert "FAIL user_id or order_id is required" in result.output

    def test_check_reports_alerts(self, app, make_order):
        order = make_order(amount="80000")
        result = app.test_cli_runner().invoke(args=["fraud", "check", "--order-id", str(order.id)])

        assert result.exit_code == 0
        assert "WARN 1 alert(s) raised" in result.output
        assert "high_value_transaction [medium]" in result.output

    def test_check_clean_order(self, app, make_order):
        order = make_order()
        result = app.test_cli_runner().invoke(args=["fraud", "check", "--order-id", str(order.id)])
        assert "PASS No alerts raised." in result.output

    def test_alerts_listing(self, app, make_order):
        from trustchain.services import fraud_service

        order = make_order(amount="80000")
        fraud_service.run_fraud_check(order_id=order.id)

        result = app.test_cli_runner().invoke(args=["fraud", "alerts", "--open-only", "--severity", "medium"])
        assert result.exit_code == 0
        assert "high_value_transaction" in result.output

        empty = app.test_cli_runner().invoke(args=["fraud", "alerts", "--severity", "critical"])
        assert "No alerts found." in empty.output
