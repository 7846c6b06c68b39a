from PIL import Image

from predict_split import predict_image
from split_features import page_context
from split_model import SplitModel
from synthetic import gutter_spread


def test_prediction_uses_book_context(tmp_path):
    book_dir = tmp_path / "images" / "herbal"
    book_dir.mkdir(parents=True)
    pages = []
    for name in ("0001.jpg", "0002.jpg"):
        path = book_dir / name
        Image.fromarray(gutter_spread()).save(path)
        pages.append(path)
    context = page_context(pages)
    # Small book: -40.  Page position (p - 0.5) * 100: 0 then +50.
    model = SplitModel(bias=500.0, book_size_offset=40.0, page_position_offset=100.0)

    first, features = predict_image(model, pages[0], context[pages[0]])
    last, _ = predict_image(model, pages[1], context[pages[1]])

    assert features.page_position == 0.5
    assert features.book_size_category == 0
    assert first == 460
    assert last == 510
