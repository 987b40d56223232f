# Tests for worktrees.py
import asyncio
import os
import re
import sys
import tempfile
import unittest
from pathlib import Path

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from errors import AlreadyExistsError, NotAGitRepositoryError, NotFoundError
from repo_fixtures import git_branches, make_git_repo, remove_tree
from worktrees import WorkspaceManager, generate_branch_name, slugify_title

BRANCH_RE = re.compile(r"^task/\d+-[a-z0-9-]*$")


class BranchNameTests(unittest.TestCase):
    def test_basic_title(self):
        self.assertEqual(generate_branch_name(42, "Add user authentication"), "task/42-add-user-authentication")

    def test_strips_punctuation_and_collapses_whitespace(self):
        name = generate_branch_name(7, "  Fix: the  (broken) login!!  page  ")
        self.assertEqual(name, "task/7-fix-the-broken-login-page")

    def test_empty_title_keeps_prefix(self):
        self.assertEqual(generate_branch_name(3, ""), "task/3-")
        self.assertEqual(generate_branch_name(3, "!!!"), "task/3-")

    def test_non_ascii_is_dropped(self):
        self.assertEqual(generate_branch_name(5, "Café déjà vu"), "task/5-caf-dj-vu")

    def test_truncates_to_sixty_without_trailing_hyphen(self):
        title = "word " * 40
        name = generate_branch_name(123, title)
        self.assertLessEqual(len(name), 60)
        self.assertTrue(name.startswith("task/123-"))
        self.assertFalse(name.endswith("--"))
        self.assertRegex(name, BRANCH_RE)
        self.assertNotEqual(name[-1], "-")

    def test_deterministic_and_well_formed(self):
        titles = ["", "A", "Hello World", "x" * 200, "Tabs\tand\nnewlines", "--dashes--", "UPPER case 99"]
        for task_id in (1, 42, 99999):
            for title in titles:
                first = generate_branch_name(task_id, title)
                self.assertEqual(first, generate_branch_name(task_id, title))
                self.assertLessEqual(len(first), 60)
                self.assertRegex(first, BRANCH_RE)

    def test_slugify_keeps_existing_hyphens(self):
        self.assertEqual(slugify_title("Pre-release  build"), "pre-release-build")


class WorkspaceManagerTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.repo = make_git_repo()
        self.manager = WorkspaceManager()

    def tearDown(self):
        remove_tree(self.repo)

    async def test_create_worktree_checks_out_tracked_files(self):
        branch = generate_branch_name(42, "Add user authentication")
        wt = await self.manager.create_worktree(42, self.repo, branch)

        self.assertEqual(wt.path, self.repo / ".specflux" / "worktrees" / "42")
        self.assertEqual(wt.branch, "task/42-add-user-authentication")
        self.assertTrue((wt.path / "README.md").is_file())
        self.assertTrue((wt.path / "src" / "app.py").is_file())
        self.assertTrue(self.manager.has_worktree(42))
        self.assertEqual(self.manager.get_worktree(42, self.repo).branch, branch)
        self.assertIn(branch, git_branches(self.repo))

    async def test_second_create_fails_and_keeps_first(self):
        first = await self.manager.create_worktree(1, self.repo, "task/1-first")
        with self.assertRaises(AlreadyExistsError):
            await self.manager.create_worktree(1, self.repo, "task/1-other")
        current = self.manager.get_worktree(1, self.repo)
        self.assertEqual(current.path, first.path)
        self.assertEqual(current.branch, "task/1-first")

    async def test_concurrent_create_only_one_succeeds(self):
        results = await asyncio.gather(
            self.manager.create_worktree(9, self.repo, "task/9-a"),
            self.manager.create_worktree(9, self.repo, "task/9-b"),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, Exception)]
        self.assertEqual(len(errors), 1)
        self.assertIsInstance(errors[0], AlreadyExistsError)

    async def test_missing_repo_raises_not_found(self):
        with self.assertRaises(NotFoundError):
            await self.manager.create_worktree(1, self.repo / "nope", "task/1-x")

    async def test_plain_directory_raises_not_a_git_repository(self):
        plain = Path(tempfile.mkdtemp())
        try:
            with self.assertRaises(NotAGitRepositoryError):
                await self.manager.create_worktree(1, plain, "task/1-x")
        finally:
            remove_tree(plain)

    async def test_reuses_existing_branch(self):
        await self.manager.create_worktree(4, self.repo, "task/4-thing")
        await self.manager.remove_worktree(4, self.repo)
        wt = await self.manager.create_worktree(4, self.repo, "task/4-thing")
        self.assertEqual(wt.branch, "task/4-thing")
        self.assertTrue(wt.path.is_dir())

    async def test_remove_deletes_directory_but_keeps_branch(self):
        wt = await self.manager.create_worktree(5, self.repo, "task/5-keep-me")
        await self.manager.remove_worktree(5, self.repo)
        self.assertFalse(self.manager.has_worktree(5))
        self.assertFalse(wt.path.exists())
        self.assertIn("task/5-keep-me", git_branches(self.repo))

    async def test_remove_is_idempotent(self):
        await self.manager.remove_worktree(77, self.repo)
        await self.manager.create_worktree(77, self.repo, "task/77-x")
        await self.manager.remove_worktree(77, self.repo)
        await self.manager.remove_worktree(77, self.repo)
        self.assertFalse(self.manager.has_worktree(77))

    async def test_task_locks_do_not_accumulate(self):
        for task_id in range(1000):
            await self.manager.remove_worktree(task_id, "/nonexistent")
        self.assertEqual(self.manager._locks, {})

        await asyncio.gather(
            self.manager.create_worktree(8, self.repo, "task/8-a"),
            self.manager.create_worktree(8, self.repo, "task/8-b"),
            return_exceptions=True,
        )
        await self.manager.reconcile(self.repo)
        await asyncio.gather(
            self.manager.remove_worktree(8, self.repo),
            self.manager.remove_worktree(8, self.repo),
        )
        self.assertFalse(self.manager.has_worktree(8))
        self.assertEqual(self.manager._locks, {})

    async def test_remove_survives_externally_deleted_directory(self):
        wt = await self.manager.create_worktree(6, self.repo, "task/6-gone")
        remove_tree(wt.path)
        await self.manager.remove_worktree(6, self.repo)
        self.assertFalse(self.manager.has_worktree(6))

    async def test_delete_branch_is_explicit(self):
        await self.manager.create_worktree(8, self.repo, "task/8-merged")
        await self.manager.remove_worktree(8, self.repo)
        await self.manager.delete_branch(self.repo, "task/8-merged", force=True)
        self.assertNotIn("task/8-merged", git_branches(self.repo))

    async def test_reconcile_adopts_worktrees_after_restart(self):
        await self.manager.create_worktree(11, self.repo, "task/11-one")
        await self.manager.create_worktree(12, self.repo, "task/12-two")

        restarted = WorkspaceManager()
        self.assertFalse(restarted.has_worktree(11))
        adopted = await restarted.reconcile(self.repo)

        self.assertEqual(sorted(wt.task_id for wt in adopted), ["11", "12"])
        self.assertEqual(restarted.get_worktree(11, self.repo).branch, "task/11-one")
        with self.assertRaises(AlreadyExistsError):
            await restarted.create_worktree(12, self.repo, "task/12-two")
        self.assertEqual(await restarted.reconcile(self.repo), [])

    async def test_create_adopts_valid_leftover_directory(self):
        await self.manager.create_worktree(13, self.repo, "task/13-left")
        fresh = WorkspaceManager()
        wt = await fresh.create_worktree(13, self.repo, "task/13-ignored")
        self.assertEqual(wt.branch, "task/13-left")

    async def test_prune_orphans_removes_untracked_directories(self):
        wt = await self.manager.create_worktree(14, self.repo, "task/14-orphan")
        await self.manager.create_worktree(15, self.repo, "task/15-kept")
        fresh = WorkspaceManager()
        await fresh.create_worktree(15, self.repo, "task/15-kept")

        removed = await fresh.prune_orphans(self.repo)

        self.assertEqual([p.name for p in removed], ["14"])
        self.assertFalse(wt.path.exists())
        self.assertTrue(fresh.has_worktree(15))

    async def test_get_worktree_scoped_to_repository(self):
        await self.manager.create_worktree(16, self.repo, "task/16-x")
        other = make_git_repo()
        try:
            self.assertIsNone(self.manager.get_worktree(16, other))
            self.assertIsNotNone(self.manager.get_worktree(16))
        finally:
            remove_tree(other)

    def test_base_dir_convention(self):
        self.assertEqual(
            self.manager.get_worktree_base_dir("/srv/repo"),
            Path("/srv/repo/.specflux/worktrees"),
        )


if __name__ == '__main__':
    unittest.main()
