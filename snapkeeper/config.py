"""
Deal with jobs defined in a config file.

The format is YAML that looks like this:

    # Global values, valid for all jobs unless overridden:
    keep: 3r 7d 4w 12m 2y
    policy-names:
      important: 7r 30d 12w 24m 10y
    directory: /var/backups/$name
    include-jobs: /usr/local/etc/snapkeeper/jobs.d/*

    jobs:
      postgres:
        target: pg-$date.sql.gz
        dateformat: "%Y%m%d-%H%M%S"

      www:
        directory: /srv/www-backups
        pattern: "*.tar.gz"
        policy: important

      photos:
        directory: /mnt/photos-snapshots
        keep:
          daily: 14
          monthly: 6

A policy is written either as a string of quotas, each a count followed by
one of the suffixes r(ecent), d(aily), w(eekly), m(onthly) or y(early), or
as a mapping of generation name to count.

Job files included from the include-jobs directory can have one or more
jobs, and behave just as if each job was listed under the jobs key
directly, after the explicitly listed entries:

    my-second-job:
      directory: /var/dir/2
      keep: 7d 4w

    another-important-job:
      directory: /important-2/
      policy: important
"""
import glob
import os
import re
from string import Template

import yaml

from .expire import GenerationPolicy


__all__ = ('Job', 'load_config', 'load_config_from_file', 'ConfigError',
           'parse_policy',)


class ConfigError(Exception):
    pass


class Job(object):
    """Represent a single directory of backups to prune."""

    def __init__(self, **initial):
        self.name = initial.get('name')
        self.directory = initial.get('directory')
        self.target = initial.get('target')
        self.pattern = initial.get('pattern')
        self.dateformat = initial.get('dateformat')
        self.policy = initial.get('policy')


QUOTA_SUFFIXES = {
    'r': 'recent',
    'd': 'daily',
    'w': 'weekly',
    'm': 'monthly',
    'y': 'yearly',
}

quota_re = re.compile(r'^(\d+)([%s])$' % ''.join(QUOTA_SUFFIXES))


def require_placeholders(text, placeholders, what):
    """
    Ensure that ``text`` contains the given placeholders.

    Raises a ``ConfigError`` using ``what`` in the message, or returns
    the unmodified text.
    """
    if text is not None:
        for var in placeholders:
            if Template(text).safe_substitute({var: 'foo'}) == text:
                raise ConfigError(('%s must make use of the following '
                                   'placeholders: %s') % (
                                       what, ", ".join(placeholders)))
    return text


def str_to_quota(text):
    """Parse a string like ``7d`` to a (generation, count) tuple."""
    match = quota_re.match(text.strip().lower())
    if not match:
        raise ValueError(text)
    return QUOTA_SUFFIXES[match.group(2)], int(match.group(1))


def parse_policy(value):
    """Parse the given string or mapping into a ``GenerationPolicy``."""
    if value is None:
        return None

    if isinstance(value, dict):
        items = []
        for field, count in value.items():
            if field not in GenerationPolicy._fields:
                raise ConfigError('Not a valid generation: %s' % field)
            items.append((field, count))
    else:
        items = []
        for item in str(value).split(' '):
            item = item.strip()
            if not item:
                continue
            try:
                items.append(str_to_quota(item))
            except ValueError as e:
                raise ConfigError('Not a valid quota: %s' % e)

    quotas = {}
    for field, count in items:
        if field in quotas:
            raise ConfigError('Generation given more than once: %s' % field)
        quotas[field] = count

    try:
        policy = GenerationPolicy(**quotas)
    except ValueError as e:
        raise ConfigError(str(e))
    if not policy.keeps_anything():
        raise ConfigError('A policy must keep at least one backup')
    return policy


def parse_named_policies(named_policy_dict):
    if not isinstance(named_policy_dict, dict):
        raise ConfigError('policy-names must be a mapping')
    named_policies = {}
    for name, policy in named_policy_dict.items():
        if policy is None:
            raise ConfigError(('%s: No policy specified') % name)
        named_policies[name] = parse_policy(policy)
    return named_policies


def load_config(text):
    """Load the config file and return a dict of jobs, with the local
    and global configurations merged.
    """
    try:
        config = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise ConfigError('config is not valid YAML: %s' % e)
    if not isinstance(config, dict):
        raise ConfigError('config must be a mapping')

    default_dateformat = config.pop('dateformat', None)
    default_policy = parse_policy(config.pop('keep', None))
    default_directory = require_placeholders(
        config.pop('directory', None), ['name'], 'The global directory')
    default_target = require_placeholders(
        config.pop('target', None), ['date'], 'The global target')
    default_pattern = config.pop('pattern', None)

    named_policies = parse_named_policies(config.pop('policy-names', None) or {})
    include_jobs_dir = config.pop('include-jobs', None)

    read_jobs = {}
    jobs_section = config.pop('jobs', None)

    def load_job(job_name, job_dict):
        """Construct a valid Job from the given job configuration yaml and return it.
        """
        if job_dict is not None and not isinstance(job_dict, dict):
            raise ConfigError('%s must be a mapping of options' % job_name)
        job_dict = dict(job_dict or {})
        # policy
        if 'keep' in job_dict and 'policy' in job_dict:
            raise ConfigError(('%s: Use either the "keep" or "policy" ' +
                               'option, not both') % job_name)
        if 'policy' in job_dict:
            policy_name = job_dict.pop('policy', None)
            if policy_name not in named_policies:
                raise ConfigError(('%s: Named policy "%s" not defined')
                                  % (job_name, policy_name))
            policy = named_policies[policy_name]
        else:
            policy = parse_policy(job_dict.pop('keep', None)) or default_policy
        # target or pattern
        if 'target' in job_dict and 'pattern' in job_dict:
            raise ConfigError(('%s: Use either the "target" or "pattern" ' +
                               'option, not both') % job_name)
        if 'pattern' in job_dict:
            target = None
            pattern = job_dict.pop('pattern')
        else:
            target = job_dict.pop('target', default_target)
            pattern = None if target else default_pattern
        new_job = Job(**{
            'name': job_name,
            'directory': job_dict.pop('directory', default_directory),
            'target': target,
            'pattern': pattern,
            'dateformat': job_dict.pop('dateformat', default_dateformat),
            'policy': policy,
        })
        if not new_job.directory:
            raise ConfigError('%s does not have a directory' % job_name)
        # Note: It's ok to define jobs without a policy. Those can only
        # be listed, never expired.
        require_placeholders(new_job.target, ['date'], '%s: target' % job_name)
        if job_dict:
            raise ConfigError('%s has unsupported configuration values: %s' % (
                job_name, ", ".join(job_dict.keys())))
        return new_job

    if jobs_section is not None and not isinstance(jobs_section, dict):
        raise ConfigError('jobs must be a mapping of job names to jobs')
    if jobs_section:
        for job_name, job_dict in jobs_section.items():
            if job_name in read_jobs:
                raise ConfigError('%s: duplicated job name' % job_name)
            read_jobs[job_name] = load_job(job_name, job_dict)

    if include_jobs_dir:
        for jobs_file in sorted(filter(os.path.isfile, glob.iglob(include_jobs_dir))):
            with open(jobs_file) as f:
                try:
                    jobs_file_yaml = yaml.safe_load(f) or {}
                except yaml.YAMLError as e:
                    raise ConfigError('%s is not valid YAML: %s' % (
                        jobs_file, e))
            if not isinstance(jobs_file_yaml, dict):
                raise ConfigError('%s must be a mapping of jobs' % jobs_file)
            for job_name, job_dict in jobs_file_yaml.items():
                if job_name in read_jobs:
                    raise ConfigError('%s: duplicated job name' % job_name)
                read_jobs[job_name] = load_job(job_name, job_dict)

    if not len(read_jobs):
        raise ConfigError('config must define at least one job')

    # Return jobs, and all global keys not popped
    return read_jobs, config


def load_config_from_file(filename):
    with open(filename, 'rb') as f:
        return load_config(f.read())
