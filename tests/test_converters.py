import json
import unittest

from botrelay.errors import FrameParseError
from botrelay.handlers.converters import (
    build_message_record,
    is_mentioned,
    normalize_message,
    parse_frame,
)
from botrelay.types import ControlFrame, ImageFrame, MessageType, TextFrame, VoiceFrame
from botrelay.utils.message import (
    is_group_id,
    render_prompt,
    split_group_message,
    split_sentences,
    strip_emoji,
)


def frame_json(msg_type=1, content="hello", from_user="wxid_friend", **extra):
    data = {
        "new_msg_id": 42,
        "from_user_name": {"str": from_user},
        "to_user_name": {"str": "wxid_bot"},
        "msg_type": msg_type,
        "content": {"str": content},
        "create_time": 1700000000,
        "status": 3,
    }
    data.update(extra)
    return json.dumps(data, ensure_ascii=False)


class ParseFrameTest(unittest.TestCase):
    def test_control_frames(self):
        self.assertEqual(parse_frame("ping"), ControlFrame(kind="ping"))
        self.assertEqual(parse_frame(b" pong\n"), ControlFrame(kind="pong"))

    def test_text_frame(self):
        frame = parse_frame(frame_json())
        self.assertIsInstance(frame, TextFrame)
        self.assertEqual(frame.msg_id, "42")
        self.assertEqual(frame.from_user, "wxid_friend")
        self.assertEqual(frame.to_user, "wxid_bot")
        self.assertEqual(frame.content, "hello")
        self.assertEqual(frame.create_time, 1700000000)

    def test_image_and_voice_frames(self):
        image = parse_frame(frame_json(3, "<img/>", image={"image_url": "http://img.test/a.jpg"}))
        voice = parse_frame(frame_json(34, "", voice={"voice_url": "http://v.test/a.silk"}))
        self.assertIsInstance(image, ImageFrame)
        self.assertEqual(image.media_url, "http://img.test/a.jpg")
        self.assertIsInstance(voice, VoiceFrame)
        self.assertEqual(voice.media_url, "http://v.test/a.silk")

    def test_invalid_frames(self):
        for raw in ("not json", "[1, 2]", frame_json(from_user=""), 12345):
            with self.assertRaises(FrameParseError):
                parse_frame(raw)


class NormalizeMessageTest(unittest.TestCase):
    def test_private_text(self):
        message = normalize_message(parse_frame(frame_json(content="你好")), "bot1")
        self.assertFalse(message.is_group)
        self.assertEqual(message.msg_type, MessageType.TEXT)
        self.assertEqual(message.parsed_sender, "")
        self.assertEqual(message.parsed_content, "你好")
        self.assertEqual(message.sender_id, "wxid_friend")

    def test_group_text_splits_sender(self):
        frame = parse_frame(frame_json(content="alice: hello world", from_user="123@chatroom"))
        message = normalize_message(frame, "bot1")
        self.assertTrue(message.is_group)
        self.assertEqual(message.parsed_sender, "alice")
        self.assertEqual(message.parsed_content, "hello world")
        self.assertEqual(message.sender_id, "alice")

    def test_group_text_without_sender(self):
        frame = parse_frame(frame_json(content="system notice", from_user="123@chatroom"))
        message = normalize_message(frame, "bot1")
        self.assertEqual(message.parsed_sender, "")
        self.assertEqual(message.parsed_content, "system notice")
        self.assertEqual(message.sender_id, "123@chatroom")

    def test_image_content_is_media_url(self):
        frame = parse_frame(frame_json(3, "<img/>", image={"image_url": "http://img.test/a.jpg"}))
        message = normalize_message(frame, "bot1")
        self.assertEqual(message.msg_type, MessageType.IMAGE)
        self.assertEqual(message.parsed_content, "http://img.test/a.jpg")

    def test_control_frame_cannot_be_normalized(self):
        with self.assertRaises(FrameParseError):
            normalize_message(ControlFrame(kind="ping"), "bot1")

    def test_mention_detection(self):
        pushed = parse_frame(frame_json(from_user="1@chatroom", push_content="alice在群聊中@了你"))
        self.assertTrue(is_mentioned(pushed))

        at_list = parse_frame(frame_json(
            from_user="1@chatroom",
            msg_source="<msgsource><atuserlist><![CDATA[wxid_x,wxid_bot]]></atuserlist></msgsource>",
        ))
        self.assertTrue(is_mentioned(at_list, "wxid_bot"))
        self.assertFalse(is_mentioned(at_list, "wxid_other"))
        self.assertFalse(is_mentioned(parse_frame(frame_json(from_user="1@chatroom")), "wxid_bot"))

    def test_private_message_is_never_mentioned(self):
        frame = parse_frame(frame_json(push_content="@了你"))
        self.assertFalse(normalize_message(frame, "bot1").mentioned)

    def test_message_record(self):
        frame = parse_frame(frame_json(content="bob:\n在吗", from_user="9@chatroom"))
        record = build_message_record(normalize_message(frame, "bot1"))
        self.assertEqual(record.bot_id, "bot1")
        self.assertEqual(record.msg_id, "42")
        self.assertEqual(record.from_user, "bob")
        self.assertEqual(record.content, "在吗")
        self.assertEqual(record.status, 3)
        self.assertTrue(record.created_at.startswith("2023-11-14T22:13:20"))


class MessageUtilsTest(unittest.TestCase):
    def test_is_group_id(self):
        self.assertTrue(is_group_id("123@chatroom"))
        self.assertFalse(is_group_id("wxid_friend"))
        self.assertFalse(is_group_id(None))

    def test_split_group_message(self):
        self.assertEqual(split_group_message("alice:\nline1\nline2"), ("alice", "line1\nline2"))
        self.assertEqual(split_group_message("bob:\n在吗 \n"), ("bob", "在吗"))
        self.assertEqual(split_group_message("no colon here"), ("", "no colon here"))
        self.assertEqual(split_group_message(""), ("", ""))

    def test_split_sentences(self):
        self.assertEqual(split_sentences("今天天气很好。出去走走吧！好吗？"), ["今天天气很好", "出去走走吧", "好吗"])
        self.assertEqual(split_sentences("没有标点"), ["没有标点"])
        self.assertEqual(split_sentences(""), [])

    def test_strip_emoji(self):
        self.assertEqual(strip_emoji("早上好☀️🌈"), "早上好")

    def test_render_prompt(self):
        self.assertEqual(
            render_prompt("现在是[time]，[time]", {"time": "08:00"}),
            "现在是08:00，08:00",
        )
