"""缓存键测试"""

import os

from wtm.events.cache_key import get_repo_cache_key, normalize_root


class TestRepoCacheKey:
    """测试 get_repo_cache_key"""

    def test_stable_for_same_path(self, tmp_path):
        assert get_repo_cache_key(tmp_path) == get_repo_cache_key(str(tmp_path))

    def test_readable_prefix_and_hash(self, tmp_path):
        root = tmp_path / "my-repo"
        root.mkdir()

        name, _, digest = get_repo_cache_key(root).rpartition("-")

        assert name == "my-repo"
        assert len(digest) == 12

    def test_same_name_different_parent(self, tmp_path):
        first = tmp_path / "a" / "repo"
        second = tmp_path / "b" / "repo"
        first.mkdir(parents=True)
        second.mkdir(parents=True)

        assert get_repo_cache_key(first) != get_repo_cache_key(second)

    def test_unsafe_characters_replaced(self, tmp_path):
        root = tmp_path / "my repo (copy)"
        root.mkdir()

        assert get_repo_cache_key(root).startswith("my_repo__copy_-")

    def test_symlink_resolves_to_target(self, tmp_path):
        target = tmp_path / "repo"
        target.mkdir()
        link = tmp_path / "link"
        os.symlink(target, link)

        assert normalize_root(link) == normalize_root(target)
        assert get_repo_cache_key(link) == get_repo_cache_key(target)

    def test_trailing_slash_ignored(self, tmp_path):
        assert get_repo_cache_key(f"{tmp_path}/") == get_repo_cache_key(tmp_path)
