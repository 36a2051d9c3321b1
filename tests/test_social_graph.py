"""Tests for friend requests, friendships, friend lists and the leaderboard."""

import threading
import time
from datetime import timedelta

import pytest

from conftest import NOW, raw_update, wait_for
from studymate.models.core import SCHEMA_VERSION, USERS
from studymate.utils.errors import BackendUnavailableError, InvalidStateError, NotFoundError, UnauthorizedError


def _user(services, user_id):
    return services.users.get_user(user_id)


class TestSendRequest:
    def test_adds_sender_to_receiver_requests(self, services, users):
        services.social.send_request('alice', 'alice', 'bob')
        assert _user(services, 'bob').friend_requests == {'alice'}
        assert _user(services, 'alice').friend_requests == set()

    def test_sending_twice_leaves_one_pending_entry(self, services, users):
        services.social.send_request('alice', 'alice', 'bob')
        services.social.send_request('alice', 'alice', 'bob')
        assert _user(services, 'bob').friend_requests == {'alice'}

    def test_requests_from_several_senders_accumulate(self, services, users):
        services.social.send_request('alice', 'alice', 'carol')
        services.social.send_request('bob', 'bob', 'carol')
        assert _user(services, 'carol').friend_requests == {'alice', 'bob'}

    def test_cannot_befriend_yourself(self, services, users):
        with pytest.raises(InvalidStateError):
            services.social.send_request('alice', 'alice', 'alice')

    def test_caller_must_be_sender(self, services, users):
        with pytest.raises(UnauthorizedError):
            services.social.send_request('bob', 'alice', 'carol')
        assert _user(services, 'carol').friend_requests == set()

    def test_missing_receiver_changes_nothing(self, services, store, users):
        before = store.get_document(USERS, 'alice')
        with pytest.raises(NotFoundError):
            services.social.send_request('alice', 'alice', 'nobody')
        assert store.get_document(USERS, 'alice') == before
        assert store.get_document(USERS, 'nobody') is None

    def test_already_friends(self, services, friends):
        with pytest.raises(InvalidStateError):
            services.social.send_request('alice', 'alice', 'bob')
        assert _user(services, 'bob').friend_requests == set()


class TestAcceptRequest:
    def test_creates_symmetric_friendship(self, services, users):
        services.social.send_request('alice', 'alice', 'bob')
        services.social.accept_request('bob', 'bob', 'alice')

        alice, bob = _user(services, 'alice'), _user(services, 'bob')
        assert alice.friends == {'bob'}
        assert bob.friends == {'alice'}
        assert bob.friend_requests == set()

    def test_without_pending_request(self, services, store, users):
        before = {user_id: store.get_document(USERS, user_id) for user_id in users}
        with pytest.raises(InvalidStateError):
            services.social.accept_request('bob', 'bob', 'alice')
        assert {user_id: store.get_document(USERS, user_id) for user_id in users} == before

    def test_caller_must_be_receiver(self, services, users):
        services.social.send_request('alice', 'alice', 'bob')
        with pytest.raises(UnauthorizedError):
            services.social.accept_request('alice', 'bob', 'alice')
        assert _user(services, 'bob').friend_requests == {'alice'}
        assert _user(services, 'alice').friends == set()

    def test_missing_receiver(self, services, users):
        with pytest.raises(NotFoundError):
            services.social.accept_request('nobody', 'nobody', 'alice')

    def test_deleted_sender_is_not_found_and_nothing_changes(self, services, store, users):
        raw_update(store, USERS, 'bob', add_to_set={'friendRequests': {'ghost'}})
        before = store.get_document(USERS, 'bob')

        with pytest.raises(NotFoundError):
            services.social.accept_request('bob', 'bob', 'ghost')

        assert store.get_document(USERS, 'bob') == before
        assert _user(services, 'bob').friend_requests == {'ghost'}

    def test_crossed_requests_are_both_settled(self, services, users):
        services.social.send_request('alice', 'alice', 'bob')
        services.social.send_request('bob', 'bob', 'alice')
        services.social.accept_request('bob', 'bob', 'alice')

        alice, bob = _user(services, 'alice'), _user(services, 'bob')
        assert alice.friends == {'bob'} and bob.friends == {'alice'}
        assert alice.friend_requests == set() and bob.friend_requests == set()

    def test_other_pending_requests_survive(self, services, users):
        services.social.send_request('alice', 'alice', 'bob')
        services.social.send_request('carol', 'carol', 'bob')
        services.social.accept_request('bob', 'bob', 'alice')
        assert _user(services, 'bob').friend_requests == {'carol'}

    def test_concurrent_accepts_commit_once(self, services, store, users):
        services.social.send_request('alice', 'alice', 'bob')
        commits_before = store.commits
        barrier = threading.Barrier(2)
        outcomes = []

        def accept():
            barrier.wait()
            try:
                services.social.accept_request('bob', 'bob', 'alice')
                outcomes.append('accepted')
            except InvalidStateError:
                outcomes.append('invalid_state')

        threads = [threading.Thread(target=accept) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=5)

        assert sorted(outcomes) == ['accepted', 'invalid_state']
        assert store.commits == commits_before + 1
        assert _user(services, 'alice').friends == {'bob'}
        assert _user(services, 'bob').friends == {'alice'}
        assert _user(services, 'bob').friend_requests == set()


class TestRejectRequest:
    def test_removes_request_without_friendship(self, services, users):
        services.social.send_request('alice', 'alice', 'bob')
        services.social.reject_request('bob', 'bob', 'alice')

        bob = _user(services, 'bob')
        assert bob.friend_requests == set()
        assert bob.friends == set()
        assert _user(services, 'alice').friends == set()

    def test_is_idempotent(self, services, users):
        services.social.reject_request('bob', 'bob', 'alice')
        services.social.reject_request('bob', 'bob', 'alice')
        assert _user(services, 'bob').friend_requests == set()

    def test_keeps_existing_friendships_and_other_requests(self, services, friends):
        services.social.send_request('carol', 'carol', 'bob')
        services.social.send_request('alice', 'alice', 'carol')
        services.social.reject_request('carol', 'carol', 'alice')

        assert _user(services, 'bob').friends == {'alice'}
        assert _user(services, 'bob').friend_requests == {'carol'}

    def test_caller_must_be_receiver(self, services, users):
        services.social.send_request('alice', 'alice', 'bob')
        with pytest.raises(UnauthorizedError):
            services.social.reject_request('carol', 'bob', 'alice')
        assert _user(services, 'bob').friend_requests == {'alice'}

    def test_missing_receiver(self, services, users):
        with pytest.raises(NotFoundError):
            services.social.reject_request('nobody', 'nobody', 'alice')


class TestRemoveFriend:
    def test_removes_both_sides(self, services, friends):
        services.social.remove_friend('alice', 'alice', 'bob')
        assert _user(services, 'alice').friends == set()
        assert _user(services, 'bob').friends == set()

    def test_either_side_may_remove(self, services, friends):
        services.social.remove_friend('bob', 'bob', 'alice')
        assert _user(services, 'alice').friends == set()
        assert _user(services, 'bob').friends == set()

    def test_repairs_one_sided_edge(self, services, store, users):
        raw_update(store, USERS, 'bob', add_to_set={'friends': {'alice'}})
        services.social.remove_friend('alice', 'alice', 'bob')
        assert _user(services, 'bob').friends == set()
        assert _user(services, 'alice').friends == set()

    def test_friend_whose_record_is_gone(self, services, store, users):
        raw_update(store, USERS, 'alice', add_to_set={'friends': {'ghost'}})
        services.social.remove_friend('alice', 'alice', 'ghost')
        assert _user(services, 'alice').friends == set()
        assert store.get_document(USERS, 'ghost') is None

    def test_keeps_other_friends(self, services, friends):
        services.social.send_request('carol', 'carol', 'alice')
        services.social.accept_request('alice', 'alice', 'carol')
        services.social.remove_friend('alice', 'alice', 'bob')
        assert _user(services, 'alice').friends == {'carol'}
        assert _user(services, 'carol').friends == {'alice'}

    def test_caller_must_be_user(self, services, friends):
        with pytest.raises(UnauthorizedError):
            services.social.remove_friend('carol', 'alice', 'bob')
        assert _user(services, 'alice').friends == {'bob'}

    def test_missing_user(self, services, users):
        with pytest.raises(NotFoundError):
            services.social.remove_friend('nobody', 'nobody', 'alice')


class TestListFriends:
    def test_includes_weekly_study_time(self, services, friends):
        services.tracking.record_study_session('bob', 'bob', 30, now=NOW - timedelta(hours=1))
        services.tracking.record_study_session('bob', 'bob', 15, now=NOW - timedelta(days=10))

        [bob] = services.social.list_friends('alice', 'alice', now=NOW)
        assert bob.id == 'bob'
        assert bob.display_name == 'Bob Brown'
        assert bob.weekly_study_time == 30
        assert bob.study_time == 45

    def test_weekly_time_is_computed_not_stored(self, services, store, friends):
        services.tracking.record_study_session('bob', 'bob', 30, now=NOW - timedelta(hours=1))
        [bob] = services.social.list_friends('alice', 'alice', now=NOW)
        assert bob.weekly_study_time == 30
        assert store.get_document(USERS, 'bob')['weeklyStudyTime'] == 0

    def test_skips_unresolvable_friends(self, services, store, friends):
        raw_update(store, USERS, 'alice', add_to_set={'friends': {'ghost'}})
        result = services.social.list_friends('alice', 'alice', now=NOW)
        assert [summary.id for summary in result] == ['bob']

    def test_no_friends(self, services, users):
        assert services.social.list_friends('carol', 'carol', now=NOW) == []

    def test_caller_must_be_user(self, services, friends):
        with pytest.raises(UnauthorizedError):
            services.social.list_friends('carol', 'alice')

    def test_missing_user(self, services, users):
        with pytest.raises(NotFoundError):
            services.social.list_friends('nobody', 'nobody')


class TestFriendRequestsAndLeaderboard:
    def test_list_friend_requests(self, services, users):
        services.social.send_request('alice', 'alice', 'carol')
        services.social.send_request('bob', 'bob', 'carol')
        senders = services.social.list_friend_requests('carol', 'carol')
        assert [sender.id for sender in senders] == ['alice', 'bob']
        assert senders[0].display_name == 'Alice Adams'

    def test_leaderboard_ranks_by_weekly_minutes(self, services, friends):
        services.social.send_request('carol', 'carol', 'alice')
        services.social.accept_request('alice', 'alice', 'carol')
        for user_id, minutes in (('alice', 30), ('bob', 50), ('carol', 20)):
            services.tracking.record_study_session(user_id, user_id, minutes, now=NOW - timedelta(hours=2))

        board = services.social.leaderboard('alice', 'alice', now=NOW)
        assert [(entry.id, entry.weekly_study_time) for entry in board] == [('bob', 50), ('alice', 30), ('carol', 20)]

    def test_leaderboard_ties_break_by_name(self, services, friends):
        board = services.social.leaderboard('bob', 'bob', now=NOW)
        assert [entry.id for entry in board] == ['alice', 'bob']


class TestSubscribeFriends:
    def test_reports_current_friends_and_changes(self, services, users):
        events = []
        unsubscribe = services.social.subscribe_friends('alice', 'alice', events.append)
        try:
            assert wait_for(lambda: events == [set()])

            services.social.send_request('bob', 'bob', 'alice')
            services.social.accept_request('alice', 'alice', 'bob')
            assert wait_for(lambda: events and events[-1] == {'bob'})

            services.social.remove_friend('bob', 'bob', 'alice')
            assert wait_for(lambda: events[-1] == set())
        finally:
            unsubscribe()

    def test_ignores_unrelated_changes(self, services, friends):
        events = []
        unsubscribe = services.social.subscribe_friends('alice', 'alice', events.append)
        try:
            assert wait_for(lambda: events == [{'bob'}])
            services.tracking.record_study_session('alice', 'alice', 25, now=NOW)
            services.social.send_request('carol', 'carol', 'alice')
            time.sleep(0.1)
            assert events == [{'bob'}]
        finally:
            unsubscribe()

    def test_no_events_after_unsubscribe(self, services, users):
        events = []
        unsubscribe = services.social.subscribe_friends('alice', 'alice', events.append)
        assert wait_for(lambda: events == [set()])
        unsubscribe()

        services.social.send_request('bob', 'bob', 'alice')
        services.social.accept_request('alice', 'alice', 'bob')
        time.sleep(0.1)
        assert events == [set()]

    def test_store_close_cancels_subscriptions(self, services, store, users):
        events = []
        services.social.subscribe_friends('alice', 'alice', events.append)
        assert wait_for(lambda: events == [set()])
        store.close()

        services.social.send_request('bob', 'bob', 'alice')
        services.social.accept_request('alice', 'alice', 'bob')
        time.sleep(0.1)
        assert events == [set()]

    def test_caller_must_be_user(self, services, users):
        with pytest.raises(UnauthorizedError):
            services.social.subscribe_friends('bob', 'alice', lambda friends: None)


class TestLegacyRecords:
    """Users written before schema versions kept their edges as lists."""

    @pytest.fixture
    def old(self, store, users):
        store.create_document(USERS, 'old', {'displayName': 'Old Timer', 'friends': ['alice'], 'friendRequests': ['bob']})
        return 'old'

    def test_list_edges_reject_set_updates(self, store, old):
        with pytest.raises(BackendUnavailableError):
            raw_update(store, USERS, old, add_to_set={'friends': {'carol'}})

    def test_accept_on_legacy_receiver(self, services, store, old):
        services.social.accept_request(old, old, 'bob')

        stored = store.get_document(USERS, old)
        assert stored['friends'] == {'alice', 'bob'}
        assert 'friendRequests' not in stored
        assert stored['schemaVersion'] == SCHEMA_VERSION
        assert _user(services, 'bob').friends == {old}

    def test_accept_from_legacy_sender(self, services, store, old):
        services.social.send_request(old, old, 'carol')
        services.social.accept_request('carol', 'carol', old)
        assert store.get_document(USERS, old)['friends'] == {'alice', 'carol'}
        assert _user(services, 'carol').friends == {old}

    def test_send_to_legacy_receiver(self, services, store, old):
        services.social.send_request('carol', 'carol', old)
        assert store.get_document(USERS, old)['friendRequests'] == {'bob', 'carol'}

    def test_reject_on_legacy_receiver(self, services, store, old):
        services.social.reject_request(old, old, 'bob')
        stored = store.get_document(USERS, old)
        assert 'friendRequests' not in stored
        assert stored['friends'] == {'alice'}

    def test_remove_legacy_friend(self, services, store, old):
        services.social.remove_friend('alice', 'alice', old)
        assert 'friends' not in store.get_document(USERS, old)
        assert _user(services, 'alice').friends == set()
