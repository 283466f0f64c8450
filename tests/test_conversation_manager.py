"""Tests for app.services.conversation_manager."""
from __future__ import annotations

from unittest.mock import patch

import pytest

from app.models.conversation import Conversation, ConversationKind, direct_pair_key
from app.models.participant import Participant, ParticipantRole
from app.services import conversation_manager, message_store
from app.services.errors import (
    AuthorizationError,
    NotFoundError,
    StorageError,
    ValidationError,
)


# ---------------------------------------------------------------------------
# find_or_create_direct
# ---------------------------------------------------------------------------


class TestFindOrCreateDirect:

    def test_creates_direct_conversation_with_two_participants(self, db_session, make_user):
        alice, bob = make_user("Alice"), make_user("Bob")

        conv = conversation_manager.find_or_create_direct(db_session, alice.id, bob.id)

        assert conv.kind == ConversationKind.DIRECT
        assert conv.direct_key == direct_pair_key(alice.id, bob.id)
        assert conv.name is None
        members = db_session.query(Participant).filter(Participant.conversation_id == conv.id).all()
        assert {p.user_id for p in members} == {alice.id, bob.id}
        assert all(p.last_read_sequence == 0 for p in members)

    def test_is_idempotent_regardless_of_argument_order(self, db_session, make_user):
        alice, bob = make_user("Alice"), make_user("Bob")

        first = conversation_manager.find_or_create_direct(db_session, alice.id, bob.id)
        second = conversation_manager.find_or_create_direct(db_session, bob.id, alice.id)
        third = conversation_manager.find_or_create_direct(db_session, alice.id, bob.id)

        assert first.id == second.id == third.id
        count = (
            db_session.query(Conversation)
            .filter(Conversation.direct_key == direct_pair_key(alice.id, bob.id))
            .count()
        )
        assert count == 1

    def test_lost_race_returns_winner(self, db_session, make_user):
        """The losing insert hits the unique key, re-reads and returns the winner's row."""
        alice, bob = make_user("Alice"), make_user("Bob")
        winner = conversation_manager.find_or_create_direct(db_session, bob.id, alice.id)

        real_find = conversation_manager._find_direct
        calls = {"n": 0}

        def stale_first_read(db, key):
            calls["n"] += 1
            if calls["n"] == 1:
                return None  # the other writer had not committed when we looked
            return real_find(db, key)

        with patch.object(conversation_manager, "_find_direct", side_effect=stale_first_read):
            result = conversation_manager.find_or_create_direct(db_session, alice.id, bob.id)

        assert result.id == winner.id
        assert calls["n"] == 2
        assert db_session.query(Conversation).filter(Conversation.kind == ConversationKind.DIRECT).filter(
            Conversation.direct_key == direct_pair_key(alice.id, bob.id)
        ).count() == 1

    def test_gives_up_after_bounded_attempts(self, db_session, make_user):
        alice, bob = make_user("Alice"), make_user("Bob")
        conversation_manager.find_or_create_direct(db_session, alice.id, bob.id)

        with patch.object(conversation_manager, "_find_direct", return_value=None) as find:
            with pytest.raises(StorageError):
                conversation_manager.find_or_create_direct(db_session, alice.id, bob.id)

        assert find.call_count == 3

    def test_unknown_user_raises_not_found(self, db_session, make_user):
        alice = make_user("Alice")
        with pytest.raises(NotFoundError):
            conversation_manager.find_or_create_direct(db_session, alice.id, "missing-user")

    def test_inactive_user_raises_not_found(self, db_session, make_user):
        alice = make_user("Alice")
        gone = make_user("Gone", is_active=False)
        with pytest.raises(NotFoundError):
            conversation_manager.find_or_create_direct(db_session, alice.id, gone.id)

    def test_self_conversation_rejected(self, db_session, make_user):
        alice = make_user("Alice")
        with pytest.raises(ValidationError):
            conversation_manager.find_or_create_direct(db_session, alice.id, alice.id)

    def test_restores_visibility_for_requester(self, db_session, make_user):
        alice, bob = make_user("Alice"), make_user("Bob")
        conv = conversation_manager.find_or_create_direct(db_session, alice.id, bob.id)
        conversation_manager.delete_for_participant(db_session, conv.id, alice.id)

        conversation_manager.find_or_create_direct(db_session, alice.id, bob.id)

        participant = db_session.get(Participant, (conv.id, alice.id))
        assert participant.hidden_through_sequence is None
        assert participant.hidden_at is None


# ---------------------------------------------------------------------------
# create_group
# ---------------------------------------------------------------------------


class TestCreateGroup:

    def test_creator_is_owner_and_members_are_members(self, db_session, make_user):
        coordinator = make_user("Coordinator")
        s1, s2 = make_user("Student One"), make_user("Student Two")

        conv = conversation_manager.create_group(
            db_session, coordinator.id, "  Batch 2025 ", [s1.id, s2.id], avatar_url="https://img/x.png"
        )

        assert conv.kind == ConversationKind.GROUP
        assert conv.name == "Batch 2025"
        assert conv.avatar_url == "https://img/x.png"
        assert conv.direct_key is None
        roles = {
            p.user_id: p.role
            for p in db_session.query(Participant).filter(Participant.conversation_id == conv.id)
        }
        assert roles == {
            coordinator.id: ParticipantRole.OWNER,
            s1.id: ParticipantRole.MEMBER,
            s2.id: ParticipantRole.MEMBER,
        }

    def test_two_groups_with_same_members_are_distinct(self, db_session, make_user):
        owner, member = make_user("Owner"), make_user("Member")
        g1 = conversation_manager.create_group(db_session, owner.id, "One", [member.id])
        g2 = conversation_manager.create_group(db_session, owner.id, "Two", [member.id])
        assert g1.id != g2.id

    @pytest.mark.parametrize("name", ["", "   ", None])
    def test_blank_name_rejected(self, db_session, make_user, name):
        owner, member = make_user("Owner"), make_user("Member")
        with pytest.raises(ValidationError):
            conversation_manager.create_group(db_session, owner.id, name, [member.id])

    def test_no_members_rejected(self, db_session, make_user):
        owner = make_user("Owner")
        with pytest.raises(ValidationError):
            conversation_manager.create_group(db_session, owner.id, "Lonely", [])

    def test_duplicate_members_rejected(self, db_session, make_user):
        owner, member = make_user("Owner"), make_user("Member")
        with pytest.raises(ValidationError):
            conversation_manager.create_group(db_session, owner.id, "Dupes", [member.id, member.id])

    def test_creator_in_member_list_rejected(self, db_session, make_user):
        owner, member = make_user("Owner"), make_user("Member")
        with pytest.raises(ValidationError):
            conversation_manager.create_group(db_session, owner.id, "Self", [owner.id, member.id])

    def test_unknown_member_creates_nothing(self, db_session, make_user):
        owner = make_user("Owner")
        before = db_session.query(Conversation).count()
        with pytest.raises(NotFoundError):
            conversation_manager.create_group(db_session, owner.id, "Ghosts", ["nobody"])
        assert db_session.query(Conversation).count() == before


# ---------------------------------------------------------------------------
# rename_group / set_group_avatar
# ---------------------------------------------------------------------------


class TestGroupMetadata:

    def test_any_member_can_rename(self, db_session, make_user):
        owner, member = make_user("Owner"), make_user("Member")
        conv = conversation_manager.create_group(db_session, owner.id, "Old", [member.id])

        updated = conversation_manager.rename_group(db_session, conv.id, member.id, "New")

        assert updated.name == "New"

    def test_non_participant_cannot_rename(self, db_session, make_user):
        owner, member, outsider = make_user("Owner"), make_user("Member"), make_user("Outsider")
        conv = conversation_manager.create_group(db_session, owner.id, "Old", [member.id])

        with pytest.raises(AuthorizationError):
            conversation_manager.rename_group(db_session, conv.id, outsider.id, "Hacked")

        db_session.expire_all()
        assert db_session.get(Conversation, conv.id).name == "Old"

    def test_non_participant_cannot_set_avatar(self, db_session, make_user):
        owner, member, outsider = make_user("Owner"), make_user("Member"), make_user("Outsider")
        conv = conversation_manager.create_group(db_session, owner.id, "G", [member.id])

        with pytest.raises(AuthorizationError):
            conversation_manager.set_group_avatar(db_session, conv.id, outsider.id, "https://img/x.png")

        db_session.expire_all()
        assert db_session.get(Conversation, conv.id).avatar_url is None

    @pytest.mark.parametrize("value", ["", "   ", None])
    def test_non_participant_with_blank_input_is_still_unauthorized(self, db_session, make_user, value):
        owner, member, outsider = make_user("Owner"), make_user("Member"), make_user("Outsider")
        conv = conversation_manager.create_group(db_session, owner.id, "G", [member.id])

        with pytest.raises(AuthorizationError):
            conversation_manager.rename_group(db_session, conv.id, outsider.id, value)
        with pytest.raises(AuthorizationError):
            conversation_manager.set_group_avatar(db_session, conv.id, outsider.id, value)

    def test_non_participant_of_direct_conversation_is_unauthorized(self, db_session, make_user):
        alice, bob, eve = make_user("Alice"), make_user("Bob"), make_user("Eve")
        conv = conversation_manager.find_or_create_direct(db_session, alice.id, bob.id)

        with pytest.raises(AuthorizationError):
            conversation_manager.rename_group(db_session, conv.id, eve.id, "Mine now")

    def test_blank_name_rejected_for_member(self, db_session, make_user):
        owner, member = make_user("Owner"), make_user("Member")
        conv = conversation_manager.create_group(db_session, owner.id, "G", [member.id])
        with pytest.raises(ValidationError):
            conversation_manager.rename_group(db_session, conv.id, member.id, "  ")

    def test_direct_conversation_cannot_be_renamed(self, db_session, make_user):
        alice, bob = make_user("Alice"), make_user("Bob")
        conv = conversation_manager.find_or_create_direct(db_session, alice.id, bob.id)

        with pytest.raises(ValidationError):
            conversation_manager.rename_group(db_session, conv.id, alice.id, "Besties")

        db_session.expire_all()
        assert db_session.get(Conversation, conv.id).name is None

    def test_direct_conversation_rejects_avatar(self, db_session, make_user):
        alice, bob = make_user("Alice"), make_user("Bob")
        conv = conversation_manager.find_or_create_direct(db_session, alice.id, bob.id)

        with pytest.raises(ValidationError):
            conversation_manager.set_group_avatar(db_session, conv.id, alice.id, "https://img/a.png")

        db_session.expire_all()
        assert db_session.get(Conversation, conv.id).avatar_url is None

    def test_set_avatar(self, db_session, make_user):
        owner, member = make_user("Owner"), make_user("Member")
        conv = conversation_manager.create_group(db_session, owner.id, "G", [member.id])

        updated = conversation_manager.set_group_avatar(db_session, conv.id, owner.id, "https://img/g.png")

        assert updated.avatar_url == "https://img/g.png"

    def test_unknown_conversation(self, db_session, make_user):
        owner = make_user("Owner")
        with pytest.raises(NotFoundError):
            conversation_manager.rename_group(db_session, "missing", owner.id, "Name")


# ---------------------------------------------------------------------------
# delete_for_participant
# ---------------------------------------------------------------------------


class TestDeleteForParticipant:

    def test_hides_only_for_caller_and_keeps_messages(self, db_session, make_user):
        alice, bob = make_user("Alice"), make_user("Bob")
        conv = conversation_manager.find_or_create_direct(db_session, alice.id, bob.id)
        message_store.append(db_session, conv.id, bob.id, "hello")

        conversation_manager.delete_for_participant(db_session, conv.id, alice.id)

        alice_row = db_session.get(Participant, (conv.id, alice.id))
        bob_row = db_session.get(Participant, (conv.id, bob.id))
        assert alice_row.hidden_through_sequence == 1
        assert alice_row.last_read_sequence == 1
        assert bob_row.hidden_through_sequence is None
        messages, _ = message_store.page(db_session, conv.id, bob.id)
        assert [m.content for m in messages] == ["hello"]

    def test_is_idempotent(self, db_session, make_user):
        alice, bob = make_user("Alice"), make_user("Bob")
        conv = conversation_manager.find_or_create_direct(db_session, alice.id, bob.id)

        conversation_manager.delete_for_participant(db_session, conv.id, alice.id)
        first_hidden_at = db_session.get(Participant, (conv.id, alice.id)).hidden_at
        conversation_manager.delete_for_participant(db_session, conv.id, alice.id)

        assert db_session.get(Participant, (conv.id, alice.id)).hidden_at == first_hidden_at

    def test_non_participant_rejected(self, db_session, make_user):
        alice, bob, eve = make_user("Alice"), make_user("Bob"), make_user("Eve")
        conv = conversation_manager.find_or_create_direct(db_session, alice.id, bob.id)
        with pytest.raises(AuthorizationError):
            conversation_manager.delete_for_participant(db_session, conv.id, eve.id)
