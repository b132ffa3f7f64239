import tempfile
import unittest
from pathlib import Path

from form_meeting_bridge import BridgeSettings, ConfigError, FormRoute, OperatorDirectory, load_settings

CONFIG_TEXT = """
user_field_name: field_12
data_dir: bridge-data
request_timeout_seconds: 5
compensate_failed_booking: true
operators:
  - name: 张三
    id: zhangsan
  - name: admin
    id: admin
form_routes:
  西安会议室预约:
    room_id: xa-room
    area: 西安
  成都会议室预约:
    room_id: cd-room
    area: 成都
api:
  app_id: from-file
"""


class TestLoadSettings(unittest.TestCase):
    def setUp(self) -> None:
        temp_dir = tempfile.TemporaryDirectory()
        self.addCleanup(temp_dir.cleanup)
        self.config_path = Path(temp_dir.name) / "meeting_bridge.yaml"
        self.config_path.write_text(CONFIG_TEXT, encoding="utf-8")
        self.missing_path = Path(temp_dir.name) / "absent.yaml"

    def test_reads_yaml_file(self) -> None:
        settings = load_settings(self.config_path, environ={})

        self.assertEqual(settings.user_field_name, "field_12")
        self.assertEqual(settings.data_dir, Path("bridge-data"))
        self.assertEqual(settings.request_timeout_seconds, 5.0)
        self.assertTrue(settings.compensate_failed_booking)
        self.assertEqual(settings.operators.default.external_id, "zhangsan")
        self.assertEqual(settings.form_routes[1], FormRoute("成都会议室预约", "cd-room", "成都"))
        self.assertEqual(settings.api.app_id, "from-file")

    def test_environment_overrides_file(self) -> None:
        environ = {
            "TENCENT_MEETING_APP_ID": "app",
            "TENCENT_MEETING_SECRET_ID": "sid",
            "TENCENT_MEETING_SECRET_KEY": "skey",
            "TENCENT_MEETING_OPERATOR_ID": "ops:ops_id,admin:admin",
            "USER_FIELD_NAME": "field_3",
            "MEETING_DATABASE_PATH": "/tmp/meetings",
            "SKIP_MEETING_CREATION": "true",
            "SKIP_ROOM_BOOKING": "1",
            "REQUEST_TIMEOUT_SECONDS": "2.5",
        }
        settings = load_settings(self.config_path, environ=environ)

        self.assertEqual(settings.api.app_id, "app")
        self.assertEqual(settings.api.secret_key, "skey")
        self.assertEqual([operator.display_name for operator in settings.operators], ["ops", "admin"])
        self.assertEqual(settings.user_field_name, "field_3")
        self.assertEqual(settings.data_dir, Path("/tmp/meetings"))
        self.assertTrue(settings.skip_meeting_creation)
        self.assertTrue(settings.skip_room_booking)
        self.assertEqual(settings.request_timeout_seconds, 2.5)

    def test_defaults_without_file(self) -> None:
        settings = load_settings(self.missing_path, environ={})

        self.assertEqual(settings.operators.default.to_dict(), {"name": "admin", "id": "admin"})
        self.assertEqual(settings.form_routes, ())
        self.assertEqual(settings.api.endpoint, "https://api.meeting.qq.com")
        self.assertFalse(settings.skip_meeting_creation)

    def test_config_path_from_environment(self) -> None:
        settings = load_settings(environ={"MEETING_BRIDGE_CONFIG": str(self.config_path)})
        self.assertEqual(settings.user_field_name, "field_12")

    def test_invalid_values_raise_config_error(self) -> None:
        with self.assertRaises(ConfigError):
            load_settings(self.missing_path, environ={"TENCENT_MEETING_OPERATOR_ID": "not-a-pair"})
        with self.assertRaises(ConfigError):
            load_settings(self.missing_path, environ={"REQUEST_TIMEOUT_SECONDS": "soon"})
        with self.assertRaises(ConfigError):
            load_settings(self.missing_path, environ={"REQUEST_TIMEOUT_SECONDS": "0"})

    def test_invalid_file_contents_raise_config_error(self) -> None:
        documents = [
            "- just\n- a list\n",
            "operators: admin\n",
            "operators: []\n",
            "form_routes:\n  西安会议室预约:\n    area: 西安\n",
            "form_routes: [xa-room]\n",
            "key: [unclosed\n",
        ]
        for document in documents:
            with self.subTest(document=document):
                self.config_path.write_text(document, encoding="utf-8")
                with self.assertRaises(ConfigError):
                    load_settings(self.config_path, environ={})


class TestBridgeSettings(unittest.TestCase):
    def setUp(self) -> None:
        self.settings = BridgeSettings(
            operators=OperatorDirectory.from_string("admin:admin"),
            form_routes=(FormRoute("西安会议室预约", "xa-room", "西安"), FormRoute("成都会议室预约", "cd-room", "成都")),
        )

    def test_route_for_form(self) -> None:
        self.assertEqual(self.settings.route_for_form("成都会议室预约").room_id, "cd-room")
        self.assertEqual(self.settings.route_for_form("Unknown").room_id, "xa-room")
        self.assertIsNone(BridgeSettings(operators=self.settings.operators).route_for_form("Unknown"))

    def test_location_for(self) -> None:
        self.assertEqual(self.settings.location_for("西安会议室预约", "大会议室"), "西安-大会议室")
        self.assertEqual(self.settings.location_for("Unknown", "大会议室"), "大会议室 (Unknown Location)")


if __name__ == "__main__":
    unittest.main()
