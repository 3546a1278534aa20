"""Tests for text node send plans."""
from flows.text import (
    Pacing, build_text_plan, extract_links, extract_list, identify_media_type, split_paragraphs,
)
from models.flow import TextData


class TestLinks:
    def test_media_type_from_extension(self):
        assert identify_media_type("https://cdn.x/menu.PDF?v=2") == "document"
        assert identify_media_type("https://cdn.x/a.jpg") == "image"
        assert identify_media_type("https://cdn.x/a.mp4") == "video"
        assert identify_media_type("https://site.x/page") is None

    def test_extract_links_drops_trailing_punctuation(self):
        parts = extract_links("Veja [o site](https://x.com). Obrigado")
        assert [p.kind for p in parts] == ["text", "link", "text"]
        assert parts[1].url == "https://x.com"
        assert parts[2].content == " Obrigado"

    def test_image_markdown(self):
        parts = extract_links("![foto](https://cdn.x/p.png)")
        assert parts[0].media_type == "image"


class TestList:
    def test_sections_and_rows(self):
        text = (
            "Nosso cardápio\n"
            "Escolha uma opção\n"
            "**Pizzas**\n"
            "- **Margherita**: tomate e manjericão\n"
            "- **Calabresa**: com cebola\n"
            "**Bebidas**\n"
            "1. **Suco**: laranja\n"
        )
        result = extract_list(text)
        assert result["title"] == "Nosso cardápio"
        assert result["description"] == "Escolha uma opção"
        assert result["buttonText"] == "Ver cardápio 📋"
        assert [s["title"] for s in result["sections"]] == ["Pizzas", "Bebidas"]
        assert result["sections"][0]["rows"][0] == {
            "title": "Margherita", "description": "tomate e manjericão", "rowId": "",
        }

    def test_plain_text_is_not_a_list(self):
        assert extract_list("just words") is None
        assert extract_list("**bold** but no items") is None


class TestPlan:
    def test_plain(self):
        plan = build_text_plan("Oi", TextData())
        assert len(plan) == 1
        assert plan[0].content == "Oi"
        assert plan[0].delay_after == 0

    def test_paragraphs_paced(self):
        assert split_paragraphs("a\n\n \n\nb") == ["a", "b"]
        plan = build_text_plan("a\n\nb\n\nc", TextData(split_paragraphs=True), Pacing(paragraph=1.5))
        assert [p.content for p in plan] == ["a", "b", "c"]
        assert [p.delay_after for p in plan] == [1.5, 1.5, 0.0]

    def test_links_become_parts(self):
        data = TextData(extract_links=True)
        plan = build_text_plan(
            "Cardápio: [pdf](https://cdn.x/menu.pdf) e [site](https://x.com)", data,
            Pacing(paragraph=1, link=2, media=4),
        )
        assert plan[0].content == "Cardápio: "
        assert plan[1].attachments == [{"url": "https://cdn.x/menu.pdf", "type": "document", "content": "pdf"}]
        assert plan[1].delay_after == 5
        assert plan[2].content == " e "
        assert plan[3].content == "https://x.com"

    def test_list_metadata(self):
        data = TextData(list_options={"title": "Menu"})
        plan = build_text_plan("Escolha", data)
        assert plan[0].metadata == {"list": {"title": "Menu"}}
