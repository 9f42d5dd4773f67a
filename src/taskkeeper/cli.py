from __future__ import annotations

import argparse
import json
import os
import sys

import httpx


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='taskkeeper', description='Manage tasks through the taskkeeper API')
    parser.add_argument('--api-base', default='http://127.0.0.1:8000', help='taskkeeper API base URL')
    parser.add_argument(
        '--token',
        default=os.getenv('TASKKEEPER_TOKEN', ''),
        help='Bearer token from `login` (default: $TASKKEEPER_TOKEN)',
    )

    sub = parser.add_subparsers(dest='command', required=True)

    register = sub.add_parser('register', help='Create an account')
    register.add_argument('--email', required=True)
    register.add_argument('--password', required=True)
    register.add_argument('--role', default='user', choices=['user', 'admin'])

    login = sub.add_parser('login', help='Obtain a bearer token')
    login.add_argument('--email', required=True)
    login.add_argument('--password', required=True)

    create = sub.add_parser('create', help='Create a task')
    create.add_argument('--title', required=True)
    create.add_argument('--description', default='')

    tasks = sub.add_parser('list', help='List visible tasks')
    tasks.add_argument('--status', default='', choices=['', 'pending', 'in_progress', 'completed'])
    tasks.add_argument('--limit', type=int, default=50)
    tasks.add_argument('--offset', type=int, default=0)

    get = sub.add_parser('get', help='Show one task')
    get.add_argument('task_id', help='Task id')

    update = sub.add_parser('update', help='Update a task')
    update.add_argument('task_id', help='Task id')
    update.add_argument('--title', default=None)
    update.add_argument('--description', default=None)
    update.add_argument('--status', default=None, choices=['pending', 'in_progress', 'completed'])

    delete = sub.add_parser('delete', help='Delete a task')
    delete.add_argument('task_id', help='Task id')

    return parser


def _auth_headers(token: str) -> dict[str, str]:
    text = str(token or '').strip()
    if not text:
        return {}
    return {'Authorization': f'Bearer {text}'}


def _print_json(payload) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=True))


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    base = args.api_base.rstrip('/')
    headers = _auth_headers(args.token)

    with httpx.Client(timeout=30, headers=headers) as client:
        if args.command == 'register':
            response = client.post(
                f'{base}/auth/register',
                json={'email': args.email, 'password': args.password, 'role': args.role},
            )
        elif args.command == 'login':
            response = client.post(
                f'{base}/auth/login',
                json={'email': args.email, 'password': args.password},
            )
        elif args.command == 'create':
            response = client.post(
                f'{base}/tasks',
                json={'title': args.title, 'description': args.description},
            )
        elif args.command == 'list':
            params: dict[str, object] = {'limit': int(args.limit), 'offset': int(args.offset)}
            if args.status:
                params['status'] = args.status
            response = client.get(f'{base}/tasks', params=params)
        elif args.command == 'get':
            response = client.get(f'{base}/tasks/{args.task_id}')
        elif args.command == 'update':
            body = {
                key: value
                for key, value in {
                    'title': args.title,
                    'description': args.description,
                    'status': args.status,
                }.items()
                if value is not None
            }
            if not body:
                parser.error('update requires at least one of --title, --description, --status')
                return 2
            response = client.put(f'{base}/tasks/{args.task_id}', json=body)
        elif args.command == 'delete':
            response = client.delete(f'{base}/tasks/{args.task_id}')
        else:
            parser.error(f'unsupported command: {args.command}')
            return 2

    if response.status_code >= 400:
        print(f'HTTP {response.status_code}: {response.text}', file=sys.stderr)
        return 1

    if response.status_code == 204 or not response.content:
        _print_json({'status': 'ok'})
        return 0
    _print_json(response.json())
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
