"""Unit tests for session/interactive.py — console browser and stdin capability."""

from unittest.mock import patch

from cloud_drive.session.interactive import ConsoleInteractiveAuth


class TestConsoleInteractiveAuth:
    def test_opens_url_in_browser(self) -> None:
        with patch(
            "cloud_drive.session.interactive.webbrowser.open", return_value=True
        ) as mock_open:
            ConsoleInteractiveAuth().open("https://www.example.com/ap/oa?x=1")

        mock_open.assert_called_once_with("https://www.example.com/ap/oa?x=1")

    def test_logs_url_when_no_browser(self, caplog) -> None:
        with patch("cloud_drive.session.interactive.webbrowser.open", return_value=False):
            ConsoleInteractiveAuth().open("https://www.example.com/ap/oa")

        assert "https://www.example.com/ap/oa" in caplog.text

    def test_reads_line_with_prompt(self) -> None:
        with patch("builtins.input", return_value="http://localhost:26619/?code=c") as mock_input:
            line = ConsoleInteractiveAuth(prompt="> ").read_line()

        assert line == "http://localhost:26619/?code=c"
        mock_input.assert_called_once_with("> ")
