"""Tests for the render_batch CLI helpers."""

import json

from scripts.render_batch import load_recipients, load_template


class TestLoadRecipients:

    def test_order_and_trimming(self, tmp_path):
        path = tmp_path / "recipients.csv"
        path.write_text("name , coupon\n Ada ,SAVE10\nGrace,\n", encoding="utf-8")

        rows = load_recipients(path)

        assert rows == [
            {"name": "Ada", "coupon": "SAVE10"},
            {"name": "Grace", "coupon": ""},
        ]

    def test_blank_rows_skipped(self, tmp_path):
        path = tmp_path / "recipients.csv"
        path.write_text("name,coupon\nAda,1\n,\nLinus,2\n", encoding="utf-8")

        assert [r["name"] for r in load_recipients(path)] == ["Ada", "Linus"]

    def test_byte_order_mark(self, tmp_path):
        path = tmp_path / "recipients.csv"
        path.write_bytes("name\nAda\n".encode("utf-8-sig"))

        assert load_recipients(path) == [{"name": "Ada"}]


class TestLoadTemplate:

    def test_id_from_filename(self, tmp_path):
        path = tmp_path / "spring-sale.json"
        path.write_text(json.dumps({
            "width": 600,
            "height": 400,
            "scene": {"objects": [{"type": "textbox", "text": "Hi {{first_name}}"}]},
        }), encoding="utf-8")

        template = load_template(path)

        assert template.id == "spring-sale"
        assert template.width == 600
        assert [f.name for f in template.fields] == ["first_name"]

    def test_declared_fields(self, tmp_path):
        path = tmp_path / "t.json"
        path.write_text(json.dumps({
            "id": "tpl-9",
            "canvasWidth": 300,
            "canvasHeight": 200,
            "canvasJSON": json.dumps({"objects": []}),
            "fields": [{"name": "photo", "kind": "image", "required": True}],
        }), encoding="utf-8")

        template = load_template(path)

        assert template.id == "tpl-9"
        assert template.height == 200
        assert template.fields[0].required
        assert template.fields[0].kind.value == "image"
