import pytest

from controller import build_parser


class TestParser:

    def test_emergency(self):
        args = build_parser().parse_args(["emergency", "12", "30"])
        assert (args.command, args.minutes, args.seconds) == ("emergency", 12, 30)

    def test_settings_break_flag(self):
        args = build_parser().parse_args(["settings", "--match", "60", "--break", "3"])
        assert args.match == 60
        assert args.break_minutes == 3
        assert args.warmup is None

    def test_session_auth_for_one_device(self):
        args = build_parser().parse_args(["session", "auth", "1234", "--device", "10.0.0.1:8080"])
        assert (args.session_command, args.password, args.device) == ("auth", "1234", "10.0.0.1:8080")

    def test_upload_type_is_checked(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["upload", "middle", "beep.mp3"])

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])
