import pytest

from claridad import identity
from claridad.errors import InvalidMembership, ValidationError


class TestResolve:
    def test_multi_word_neighborhood(self):
        assert identity.resolve("Bosque Peralta Ramos") == "chat_bosque_peralta_ramos"

    def test_case_and_punctuation_collapse(self):
        ids = {identity.resolve(n) for n in ("Los Álamos", "los  álamos", "LOS-álamos!", " los_álamos ")}
        assert len(ids) == 1

    def test_non_ascii_letters_are_separators(self):
        assert identity.resolve("Villa Crespo 2") == "chat_villa_crespo_2"
        assert identity.resolve("Ñuñoa") == "chat_u_oa"

    def test_result_is_stable(self):
        assert identity.resolve("Centro") == identity.resolve("Centro")

    @pytest.mark.parametrize("name", ["", "   ", "!!!", None])
    def test_unusable_name_rejected(self, name):
        with pytest.raises(InvalidMembership):
            identity.resolve(name)

    def test_invalid_membership_is_a_validation_error(self):
        with pytest.raises(ValidationError):
            identity.resolve("---")


class TestChatIdShapes:
    def test_legacy_ids(self):
        assert identity.is_legacy_id("507f1f77bcf86cd799439011")
        assert identity.is_legacy_id("507F1F77BCF86CD799439011")
        assert not identity.is_legacy_id("chat_centro")
        assert not identity.is_legacy_id("507f1f77bcf86cd79943901")
        assert not identity.is_legacy_id(None)
