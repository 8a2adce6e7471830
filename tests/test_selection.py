"""
Test include/exclude glob matching and source walking.
"""

import os

import pytest

from backup_store.snapshots.selection import PathFilter, compile_glob, normalize_rel, walk_source


class TestGlob:

    @pytest.mark.parametrize('pattern,path,expected', [
        ('*.md', 'notes.md', True),
        ('*.md', 'dir/notes.md', False),
        ('**/*.md', 'notes.md', True),
        ('**/*.md', 'a/b/notes.md', True),
        ('**/*.md', 'a/b/notes.txt', False),
        ('a/**/b', 'a/b', True),
        ('a/**/b', 'a/x/y/b', True),
        ('a/**/b', 'a/x/c', False),
        ('tmp/', 'tmp', True),
        ('tmp/', 'tmp/x/y', True),
        ('tmp/', 'other/tmp', False),
        ('file?.txt', 'file1.txt', True),
        ('file?.txt', 'file10.txt', False),
        ('file?.txt', 'file/.txt', False),
        ('[!a]*.txt', 'b.txt', True),
        ('[!a]*.txt', 'a.txt', False),
        ('[ab].txt', 'b.txt', True),
        ('[ab.txt', '[ab.txt', True),
        ('[!]]', 'a', True),
        ('[!]]', ']', False),
        ('[]a]', ']', True),
        ('data', 'data', True),
        ('data', 'database', False),
    ])
    def test_pattern(self, pattern, path, expected):
        assert bool(compile_glob(pattern).match(path)) is expected

    def test_empty_pattern_matches_nothing(self):
        assert compile_glob('').match('anything') is None

    def test_normalize_rel(self):
        assert normalize_rel('./a//b/') == 'a/b'


class TestPathFilter:

    def test_no_includes_selects_everything(self):
        assert PathFilter().selects('any/path.txt')

    def test_include_selects_subtree_with_trailing_slash(self):
        f = PathFilter(includes=['memory/'])

        assert f.selects('memory/2026/today.md')
        assert not f.selects('notes/today.md')

    def test_include_matches_whole_path_only(self):
        assert not PathFilter(includes=['memory']).selects('memory/2026/today.md')
        assert not PathFilter(includes=['src/*']).selects('src/pkg/deep/mod.py')
        assert PathFilter(includes=['src/*']).selects('src/mod.py')
        assert not PathFilter(includes=['*']).selects('a/b/c.txt')
        assert PathFilter(includes=['*']).selects('c.txt')

    def test_excludes_win(self):
        f = PathFilter(includes=['**/*.md'], excludes=['drafts/'])

        assert f.selects('notes/a.md')
        assert not f.selects('drafts/a.md')

    def test_exclude_by_ancestor(self):
        f = PathFilter(excludes=['node_modules'])

        assert f.is_excluded('node_modules/pkg/index.js')
        assert not f.is_excluded('src/index.js')


class TestWalkSource:

    @pytest.fixture
    def tree(self, tmp_path):
        for rel in ('a.txt', 'sub/b.txt', 'sub/deep/c.md', 'skip/d.txt'):
            path = tmp_path / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(rel)
        return tmp_path

    def test_sorted_forward_slash_paths(self, tree):
        rels = [f.rel_path for f in walk_source(tree, PathFilter())]

        assert rels == ['a.txt', 'skip/d.txt', 'sub/b.txt', 'sub/deep/c.md']

    def test_excluded_directories_pruned(self, tree):
        rels = [f.rel_path for f in walk_source(tree, PathFilter(excludes=['skip', '**/*.md']))]

        assert rels == ['a.txt', 'sub/b.txt']

    def test_absolute_paths_point_at_files(self, tree):
        [entry] = walk_source(tree, PathFilter(includes=['sub/deep/']))

        assert entry.abs_path == tree / 'sub' / 'deep' / 'c.md'

    @pytest.mark.skipif(not hasattr(os, 'symlink'), reason="symlinks unsupported")
    def test_symlinks_not_followed(self, tree, tmp_path_factory):
        outside = tmp_path_factory.mktemp('outside')
        (outside / 'secret.txt').write_text('secret')
        os.symlink(outside, tree / 'linked_dir')
        os.symlink(outside / 'secret.txt', tree / 'linked_file.txt')

        rels = [f.rel_path for f in walk_source(tree, PathFilter())]

        assert 'linked_file.txt' not in rels
        assert not any(r.startswith('linked_dir') for r in rels)
