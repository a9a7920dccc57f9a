from datasketch import MinHash

from src.services.content_hashing import ContentHasher, normalize_text, to_minhash

STORY = (
    "Security forces dispersed a crowd gathered outside the provincial governor's office on "
    "Tuesday evening after residents demanded answers about the water shortages that have "
    "left several neighbourhoods without supply for more than a week"
)


def test_normalize_text_folds_case_punctuation_and_whitespace() -> None:
    assert normalize_text("  Hello,   WORLD!!  ") == "hello world"
    assert normalize_text("") == ""
    assert normalize_text(None) == ""


def test_normalize_text_unifies_arabic_and_persian_letters() -> None:
    arabic_keyboard = "كيف"  # kaf + arabic yeh + feh
    persian_keyboard = "کیف"

    assert normalize_text(arabic_keyboard) == normalize_text(persian_keyboard)


def test_normalize_text_drops_tatweel_and_splits_on_zwnj() -> None:
    assert normalize_text("تــهران") == "تهران"
    assert normalize_text("می‌رود") == "می رود"


def test_fingerprint_ignores_formatting_noise() -> None:
    hasher = ContentHasher()

    assert hasher.fingerprint(STORY) == hasher.fingerprint(STORY.upper() + " !!!")
    assert hasher.fingerprint("   ") is None


def test_signature_is_deterministic_across_instances() -> None:
    first = ContentHasher().signature(STORY)
    second = ContentHasher().signature(STORY)

    assert first is not None
    assert len(first) == 128
    assert first == second


def test_signature_is_a_seeded_datasketch_minhash() -> None:
    hasher = ContentHasher()
    expected = MinHash(num_perm=128, seed=1)
    for shingle in hasher.shingles(STORY):
        expected.update(shingle.encode("utf-8"))

    signature = hasher.signature(STORY)

    assert signature == tuple(int(value) for value in expected.hashvalues)
    assert to_minhash(signature).jaccard(expected) == 1.0


def test_signature_is_none_for_short_text() -> None:
    hasher = ContentHasher()

    assert hasher.signature("four words only here") is None
    assert hasher.is_degenerate("four words only here")
    assert hasher.signature(None) is None


def test_similarity_is_symmetric_and_bounded() -> None:
    hasher = ContentHasher()
    left = hasher.signature(STORY)
    right = hasher.signature(STORY + " according to local officials who spoke on condition of anonymity")

    score = hasher.similarity(left, right)

    assert 0.0 < score < 1.0
    assert score == hasher.similarity(right, left)
    assert hasher.similarity(left, left) == 1.0


def test_similarity_of_unrelated_text_is_low() -> None:
    hasher = ContentHasher()
    other = (
        "The national football team announced its squad for the upcoming qualifiers with three "
        "uncapped players from the domestic league joining the veteran captain"
    )

    assert hasher.similarity(hasher.signature(STORY), hasher.signature(other)) < 0.2


def test_similarity_with_mismatched_lengths_is_zero() -> None:
    short = ContentHasher(num_perm=64).signature(STORY)
    full = ContentHasher().signature(STORY)

    assert ContentHasher.similarity(short, full) == 0.0
    assert ContentHasher.similarity(None, full) == 0.0
